"""
CallbackListener — a short-lived local HTTP server that catches the OAuth
provider's redirect during a CLI connect flow.

It mounts the same ``/oauth/callback`` endpoint the web app uses, runs it
under a programmatic ``uvicorn.Server`` in a background task, and is always
shut down once the session is established, failed or timed out.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import webbrowser
from typing import Callable, Optional
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from connectors.errors import ConfigurationError
from connectors.oauth_flow import OAuthCallbackHandler
from connectors.redaction import install_redacting_filter
from connectors.session_store import OAuthSession

logger = logging.getLogger(__name__)


class CallbackListener:
    """Serve ``path`` on ``host:port`` until stopped."""

    def __init__(
        self,
        handler: OAuthCallbackHandler,
        host: str = "127.0.0.1",
        port: int = 3000,
        path: str = "/oauth/callback",
    ) -> None:
        self.handler = handler
        self.host = host
        self.port = port
        self.path = path
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._sock: Optional[socket.socket] = None

    @classmethod
    def for_redirect_uri(cls, handler: OAuthCallbackHandler, redirect_uri: str) -> "CallbackListener":
        parsed = urlparse(redirect_uri)
        host = parsed.hostname or "127.0.0.1"
        if host == "localhost":
            host = "127.0.0.1"
        return cls(handler, host=host, port=parsed.port or 80, path=parsed.path or "/oauth/callback")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_app(self) -> FastAPI:
        from api.routes import oauth_callback

        app = FastAPI(title="OAuth callback listener", docs_url=None, redoc_url=None)
        app.state.settings = self.handler.settings
        app.state.oauth_handler = self.handler
        app.add_api_route(self.path, oauth_callback, methods=["GET"], response_class=HTMLResponse)
        return app

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            raise ConfigurationError(
                f"Port {self.port} is already in use; stop the other service or change PORT",
            ) from exc
        sock.set_inheritable(True)
        return sock

    async def start(self) -> None:
        if self.is_running:
            return
        self._sock = self._bind()
        self.port = self._sock.getsockname()[1]

        config = uvicorn.Config(self._build_app(), log_level="warning", lifespan="off")
        install_redacting_filter()
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._sock]))

        while not self._server.started:
            if self._task.done():
                self._task.result()
                break
            await asyncio.sleep(0.05)
        logger.info("Listening for OAuth callback on http://%s:%d%s", self.host, self.port, self.path)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
        if self._sock is not None:
            self._sock.close()
        self._server = None
        self._task = None
        self._sock = None
        logger.debug("Callback listener stopped")

    async def __aenter__(self) -> "CallbackListener":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


def _open_browser(url: str) -> None:
    if not webbrowser.open(url):
        print(f"⚠️  Please open this URL in your browser:\n   {url}\n")


async def run_connect_flow(
    handler: OAuthCallbackHandler,
    connector_id: str,
    *,
    redirect_uri: Optional[str] = None,
    timeout: Optional[float] = None,
    open_browser: bool = True,
    listener_factory: Optional[Callable[[OAuthCallbackHandler, str], CallbackListener]] = None,
) -> OAuthSession:
    """
    Initiate, catch the redirect locally, and wait for a connection id.

    The listener is released whatever the outcome.
    """
    session = await handler.initiate(connector_id, redirect_uri)
    factory = listener_factory or CallbackListener.for_redirect_uri
    listener = factory(handler, session.redirect_uri)

    try:
        try:
            await listener.start()
        except ConfigurationError as exc:
            session.fail(exc)
            raise

        print(f"🔗 OAuth URL:\n   {session.oauth_url}\n")
        if open_browser:
            _open_browser(session.oauth_url)
        print("⏳ Waiting for OAuth callback...\n")

        return await handler.wait_for_completion(session, timeout=timeout)
    finally:
        await listener.stop()
