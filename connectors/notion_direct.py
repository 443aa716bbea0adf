"""
NotionDirectClient — Notion's public API called with an internal
integration token, bypassing Alloy.

Exposes the same read / write methods as ``connectors.notion.NotionClient``
so the page helpers there (``create_simple_page``, ``verify_connection`` …)
work with either client.  The token is sent as a bearer header and never
logged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import Settings
from connectors.errors import (
    BrokerError,
    ConfigurationError,
    TransientNetworkError,
    error_for_status,
    error_message,
)

logger = logging.getLogger(__name__)

NOTION_API_URL = "https://api.notion.com/v1"

_DEFAULT_SEARCH_FILTER = {"value": "page", "property": "object"}


class NotionDirectClient:
    """Async client for ``https://api.notion.com/v1``."""

    def __init__(
        self,
        settings: Settings,
        token: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        token = token or settings.notion_internal_token
        if not token:
            raise ConfigurationError(
                "Notion internal token is required; pass it or set NOTION_INTERNAL_TOKEN",
                variable="NOTION_INTERNAL_TOKEN",
            )
        self._client = client or httpx.AsyncClient(
            base_url=NOTION_API_URL,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": settings.notion_version,
                "Content-Type": "application/json",
            },
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "NotionDirectClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Notion %s %s timed out", method, path)
            raise TransientNetworkError(f"Timed out calling Notion: {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Notion %s %s failed: %s", method, path, exc)
            raise TransientNetworkError(f"Could not reach Notion: {exc}") from exc

        if resp.is_success:
            try:
                return resp.json() if resp.content else {}
            except ValueError as exc:
                raise BrokerError(
                    f"Notion returned a non-JSON response for {method} {path}",
                    status_code=502,
                    details={"body": resp.text[:500]},
                ) from exc

        try:
            payload: Any = resp.json()
        except ValueError:
            payload = {"body": resp.text[:500]}

        status = resp.status_code
        message = error_message(payload, f"Notion API error {status} for {method} {path}")
        logger.error("Notion %s %s → %s: %s", method, path, status, message)
        raise error_for_status(status, message, payload)

    # ── Read ────────────────────────────────────────────────────────────

    async def search_pages(
        self,
        query: Optional[str] = None,
        filter: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {"filter": filter or _DEFAULT_SEARCH_FILTER}
        if query:
            body["query"] = query
        response = await self._request("POST", "/search", json=body)
        return (response or {}).get("results", [])

    async def get_page(self, page_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/pages/{page_id}")

    async def query_database(
        self,
        database_id: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        response = await self._request("POST", f"/databases/{database_id}/query", json=query or {})
        return (response or {}).get("results", [])

    async def get_database(self, database_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/databases/{database_id}")

    async def get_bot_user(self) -> Dict[str, Any]:
        """The integration's own bot user; a cheap token check."""
        return await self._request("GET", "/users/me")

    # ── Write ───────────────────────────────────────────────────────────

    async def create_page(self, page: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Creating Notion page directly under %s", page.get("parent", {}).get("type"))
        return await self._request("POST", "/pages", json=page)

    async def update_page(self, page_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Updating Notion page %s directly", page_id)
        return await self._request("PATCH", f"/pages/{page_id}", json=updates)
