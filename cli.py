"""
Command-line entry point.

    python cli.py connect [--connector notion] [--no-browser] [--write-env]
    python cli.py list [--connector notion]
    python cli.py show CONNECTION_ID [--tokens]
    python cli.py verify [--limit 10] [--write-env]
    python cli.py direct-check [--query TEXT]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from config.log_setup import configure_logging
from config.settings import Settings, load_config
from connectors.alloy_client import AlloyClient
from connectors.env_file import write_connection_id
from connectors.errors import AlloyError
from connectors.local_listener import run_connect_flow
from connectors.models import format_connection
from connectors.notion import NotionClient, make_connection_verifier, verify_connection
from connectors.notion_direct import NotionDirectClient
from connectors.oauth_flow import OAuthCallbackHandler

logger = logging.getLogger(__name__)


async def _connect(settings: Settings, args: argparse.Namespace) -> int:
    async with AlloyClient(settings) as client:
        handler = OAuthCallbackHandler(
            client, settings, verifier=make_connection_verifier(client, settings)
        )
        session = await run_connect_flow(
            handler,
            args.connector,
            timeout=args.timeout or settings.oauth_session_timeout_seconds,
            open_browser=not args.no_browser,
        )

    print(f"\n✅ SUCCESS! {args.connector} connected to Alloy!")
    print(f"🔗 Connection ID: {session.connection_id}")
    if args.write_env:
        path = write_connection_id(session.connection_id, settings.env_file_path)
        print(f"📝 Saved CONNECTION_ID to {path}")
    else:
        print(f"\n📝 Add this to your .env file:\n   CONNECTION_ID={session.connection_id}\n")
    return 0


async def _list(settings: Settings, args: argparse.Namespace) -> int:
    async with AlloyClient(settings) as client:
        connections = await client.list_connections()
    if args.connector:
        connections = [c for c in connections if c.matches(args.connector)]

    if not connections:
        print("❌ No connections found")
        return 1
    print(f"✅ Found {len(connections)} connection(s)\n")
    for index, credential in enumerate(connections):
        print(format_connection(credential, index))
        print()
    return 0


async def _show(settings: Settings, args: argparse.Namespace) -> int:
    async with AlloyClient(settings) as client:
        if args.tokens:
            info = await client.get_connection_tokens(args.connection_id)
            print(json.dumps(info, indent=2, default=str))
        else:
            credential = await client.get_connection(args.connection_id)
            print(format_connection(credential))
    return 0


async def _verify(settings: Settings, args: argparse.Namespace) -> int:
    """Find a Notion connection that actually works, starting with CONNECTION_ID."""
    async with AlloyClient(settings) as client:
        candidates: List[str] = []
        if settings.connection_id:
            candidates.append(settings.connection_id)
        connections = await client.list_connections()
        notion = sorted(
            (c for c in connections if c.matches("notion") and c.connection_id),
            key=lambda c: c.created_at.timestamp() if c.created_at else 0.0,
            reverse=True,
        )
        candidates.extend(c.connection_id for c in notion if c.connection_id not in candidates)

        for connection_id in candidates[: args.limit]:
            try:
                count = await verify_connection(NotionClient(client, connection_id, settings))
            except AlloyError as exc:
                print(f"   ❌ {connection_id}: {exc.message}")
                continue
            print(f"   ✅ {connection_id} works ({count} pages visible)")
            if args.write_env:
                write_connection_id(connection_id, settings.env_file_path)
                print(f"📝 Saved CONNECTION_ID to {settings.env_file_path}")
            return 0

    print("❌ No working Notion connection found; run `python cli.py connect`")
    return 1


async def _direct_check(settings: Settings, args: argparse.Namespace) -> int:
    """Check NOTION_INTERNAL_TOKEN against Notion itself, without Alloy."""
    async with NotionDirectClient(settings) as notion:
        bot = await notion.get_bot_user()
        pages = await notion.search_pages(args.query)
    print(f"✅ Notion token works as {bot.get('name') or bot.get('id')}")
    print(f"📄 {len(pages)} page(s) visible")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Alloy connection tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    connect = sub.add_parser("connect", help="Run the OAuth flow with a local callback listener")
    connect.add_argument("--connector", default="notion")
    connect.add_argument("--no-browser", action="store_true", help="Print the URL instead of opening it")
    connect.add_argument("--write-env", action="store_true", help="Store CONNECTION_ID in the env file")
    connect.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the callback")

    listing = sub.add_parser("list", help="List credentials for the configured user")
    listing.add_argument("--connector", default=None)

    show = sub.add_parser("show", help="Show one connection")
    show.add_argument("connection_id")
    show.add_argument("--tokens", action="store_true", help="Include masked token metadata")

    verify = sub.add_parser("verify", help="Find a working Notion connection")
    verify.add_argument("--limit", type=int, default=10)
    verify.add_argument("--write-env", action="store_true")

    direct = sub.add_parser("direct-check", help="Check NOTION_INTERNAL_TOKEN directly against Notion")
    direct.add_argument("--query", default=None)

    return parser


_COMMANDS = {
    "connect": _connect,
    "list": _list,
    "show": _show,
    "verify": _verify,
    "direct-check": _direct_check,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_config()
    except AlloyError as exc:
        print(f"❌ {exc.message}", file=sys.stderr)
        return 2
    configure_logging(settings.debug)

    try:
        return asyncio.run(_COMMANDS[args.command](settings, args))
    except AlloyError as exc:
        print(f"❌ {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
