"""
NotionClient — Notion reads and writes executed through Alloy actions.

Every call goes to ``POST /connectors/notion/actions/{actionId}/execute``
authenticated by the stored connection id; no Notion token is handled here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from config.settings import Settings
from connectors.alloy_client import AlloyClient
from connectors.errors import AlloyError

logger = logging.getLogger(__name__)

CONNECTOR_ID = "notion"

_DEFAULT_SEARCH_FILTER = {"value": "page", "property": "object"}


class NotionClient:
    """Notion operations exposed as Alloy actions."""

    def __init__(self, alloy: AlloyClient, connection_id: str, settings: Settings) -> None:
        self._alloy = alloy
        self.connection_id = connection_id
        self._headers = {"Notion-Version": settings.notion_version}

    async def _execute(
        self,
        action_id: str,
        *,
        request_body: Any = None,
        path_params: Optional[Dict[str, str]] = None,
        query_params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self._alloy.execute_action(
            CONNECTOR_ID,
            action_id,
            self.connection_id,
            request_body=request_body,
            path_params=path_params,
            query_params=query_params,
            headers=self._headers,
        )

    # ── Read ────────────────────────────────────────────────────────────

    async def search_pages(
        self,
        query: Optional[str] = None,
        filter: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """Search the workspace.  Defaults to pages only."""
        body: Dict[str, Any] = {"filter": filter or _DEFAULT_SEARCH_FILTER}
        if query:
            body["query"] = query
        response = await self._execute("post-search", request_body=body)
        return (response or {}).get("results", [])

    async def get_page(self, page_id: str) -> Dict[str, Any]:
        return await self._execute("retrieve-a-page", path_params={"page_id": page_id})

    async def query_database(
        self,
        database_id: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        response = await self._execute(
            "post-database-query",
            path_params={"database_id": database_id},
            request_body=query or {},
        )
        return (response or {}).get("results", [])

    async def get_database(self, database_id: str) -> Dict[str, Any]:
        return await self._execute("retrieve-a-database", path_params={"database_id": database_id})

    # ── Write ───────────────────────────────────────────────────────────

    async def create_page(self, page: Dict[str, Any]) -> Dict[str, Any]:
        """``page`` is a Notion page object: parent, properties, children, icon, cover."""
        logger.info("Creating Notion page under %s", page.get("parent", {}).get("type"))
        return await self._execute("post-page", request_body=page)

    async def update_page(self, page_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Updating Notion page %s", page_id)
        return await self._execute(
            "patch-page",
            path_params={"page_id": page_id},
            request_body=updates,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Helpers: hide Notion's nested property structure
# ═══════════════════════════════════════════════════════════════════════════════


def title_property(text: str) -> Dict[str, Any]:
    return {"type": "title", "title": [{"type": "text", "text": {"content": text}}]}


def page_parent(
    parent_page_id: Optional[str] = None,
    parent_database_id: Optional[str] = None,
) -> Dict[str, Any]:
    if parent_page_id:
        return {"type": "page_id", "page_id": parent_page_id}
    if parent_database_id:
        return {"type": "database_id", "database_id": parent_database_id}
    return {"type": "workspace", "workspace": True}


def build_properties(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn simple values into Notion property objects.

    ``title`` → title, str → rich_text, bool → checkbox, number → number,
    list → multi_select.  Dicts are passed through untouched.
    """
    properties: Dict[str, Any] = {}
    for name, value in values.items():
        if isinstance(value, dict):
            properties[name] = value
        elif name == "title":
            properties[name] = title_property(str(value))
        elif isinstance(value, bool):
            properties[name] = {"checkbox": value}
        elif isinstance(value, (int, float)):
            properties[name] = {"number": value}
        elif isinstance(value, (list, tuple)):
            properties[name] = {"multi_select": [{"name": str(v)} for v in value]}
        else:
            properties[name] = {"rich_text": [{"type": "text", "text": {"content": str(value)}}]}
    return properties


def page_title(page: Dict[str, Any]) -> str:
    """Plain-text title of a page object, or ``"Untitled"``."""
    for prop in (page.get("properties") or {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            parts = prop.get("title") or []
            text = "".join(p.get("plain_text") or p.get("text", {}).get("content", "") for p in parts)
            return text or "Untitled"
    return "Untitled"


async def create_simple_page(
    client: NotionClient,
    title: str,
    *,
    parent_page_id: Optional[str] = None,
    parent_database_id: Optional[str] = None,
    properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create a page from plain values.

    Workspace pages only accept a title; extra ``properties`` need a
    database parent.
    """
    values: Dict[str, Any] = {"title": title}
    if properties:
        values.update(properties)
    return await client.create_page(
        {
            "parent": page_parent(parent_page_id, parent_database_id),
            "properties": build_properties(values),
        }
    )


async def update_page_title(client: NotionClient, page_id: str, new_title: str) -> Dict[str, Any]:
    return await client.update_page(page_id, {"properties": {"title": title_property(new_title)}})


async def archive_page(client: NotionClient, page_id: str) -> Dict[str, Any]:
    return await client.update_page(page_id, {"archived": True})


async def verify_connection(client: NotionClient) -> int:
    """Number of pages visible through the connection; raises if it does not work."""
    pages = await client.search_pages()
    return len(pages)


def make_connection_verifier(alloy: AlloyClient, settings: Settings):
    """
    Verifier for ``OAuthCallbackHandler``: a discovered Notion connection
    only counts if a search through it succeeds.  Other connectors pass.
    """

    async def _verify(connector_id: str, connection_id: str) -> bool:
        if connector_id != CONNECTOR_ID:
            return True
        try:
            count = await verify_connection(NotionClient(alloy, connection_id, settings))
        except AlloyError as exc:
            logger.warning("Notion connection %s failed verification: %s", connection_id, exc.message)
            return False
        logger.info("Notion connection %s verified (%d pages visible)", connection_id, count)
        return True

    return _verify
