"""
Credential / connection models and the helpers that normalize raw Alloy
payloads.

The Alloy API is inconsistent about field names: the same connection can
come back as ``credentialId``, ``id``, ``_id`` or ``connectionId``, and the
connector as ``connectorId``, ``connector_id``, ``connector`` or
``integrationId``.  Everything else in the codebase goes through these
helpers instead of reading the raw keys.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

_ID_FIELDS = ("credentialId", "id", "_id", "connectionId")
_CONNECTOR_FIELDS = ("connectorId", "connector_id", "connector", "integrationId")
_CREATED_FIELDS = ("createdAt", "created_at")

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def get_connection_id(raw: Mapping[str, Any]) -> Optional[str]:
    """First non-empty of credentialId, id, _id, connectionId."""
    for field in _ID_FIELDS:
        value = raw.get(field)
        if value:
            return str(value)
    return None


def get_connector_id(raw: Mapping[str, Any]) -> str:
    for field in _CONNECTOR_FIELDS:
        value = raw.get(field)
        if value:
            return str(value)
    return "unknown"


def get_created_at(raw: Mapping[str, Any]) -> datetime:
    """
    Parse the creation timestamp.

    Accepts ISO-8601 strings (``Z`` suffix included) and epoch numbers in
    seconds or milliseconds.  Missing or unparseable values sort as the epoch.
    """
    value = None
    for field in _CREATED_FIELDS:
        if raw.get(field):
            value = raw[field]
            break
    if value is None:
        return _EPOCH

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return _EPOCH

    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def matches_connector(raw: Mapping[str, Any], connector_id: str) -> bool:
    """
    True if the credential belongs to ``connector_id``.

    Falls back to ``type`` / ``name`` because some credentials only carry
    e.g. ``type: "notion-oauth2"``.
    """
    wanted = connector_id.lower()
    if get_connector_id(raw).lower() == wanted:
        return True
    kind = str(raw.get("type") or "").lower()
    name = str(raw.get("name") or "").lower()
    return wanted in kind or wanted in name


def sort_by_created(items: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Newest first.  Ties keep their original order."""
    return sorted(items, key=get_created_at, reverse=True)


def most_recent(
    items: Iterable[Mapping[str, Any]],
    connector_id: Optional[str] = None,
) -> Optional[Mapping[str, Any]]:
    candidates = [
        item for item in items
        if connector_id is None or matches_connector(item, connector_id)
    ]
    if not candidates:
        return None
    return sort_by_created(candidates)[0]


# ═══════════════════════════════════════════════════════════════════════════════
# Models
# ═══════════════════════════════════════════════════════════════════════════════


class Credential(BaseModel):
    """An authorized link between this app and one downstream account."""

    connection_id: Optional[str] = None
    connector_id: str = "unknown"
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    name: Optional[str] = None
    type: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "Credential":
        created = get_created_at(raw)
        return cls(
            connection_id=get_connection_id(raw),
            connector_id=get_connector_id(raw),
            status=raw.get("status"),
            created_at=None if created == _EPOCH else created,
            name=raw.get("name"),
            type=raw.get("type"),
            raw=dict(raw),
        )

    def matches(self, connector_id: str) -> bool:
        return matches_connector(self.raw or self._as_raw(), connector_id)

    def _as_raw(self) -> Dict[str, Any]:
        return {"connectorId": self.connector_id, "type": self.type, "name": self.name}

    def public_dict(self) -> Dict[str, Any]:
        """Listing shape for API responses; token fields are never included."""
        return {
            "connectionId": self.connection_id,
            "connectorId": self.connector_id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class OAuthInitiation(BaseModel):
    oauth_url: str
    credential_id: Optional[str] = None


class ExchangeResult(BaseModel):
    connection_id: str
    credential_id: Optional[str] = None


def format_connection(credential: Credential, index: Optional[int] = None) -> str:
    name = credential.name or f"Connection {index + 1 if index is not None else ''}".rstrip()
    created = credential.created_at.isoformat() if credential.created_at else "N/A"
    return "\n".join(
        [
            f"  Connection ID (credentialId): {credential.connection_id or 'N/A'}",
            f"  Connector ID: {credential.connector_id}",
            f"  Name: {name}",
            f"  Type: {credential.type or 'N/A'}",
            f"  Created: {created}",
            f"  Status: {credential.status or 'N/A'}",
        ]
    )
