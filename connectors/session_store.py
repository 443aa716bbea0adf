"""
OAuth sessions — the ephemeral state carried between "initiate" and
"callback", and the in-memory store that finds a session again when the
provider redirects back.

Sessions are never persisted.  They are keyed by ``session_id`` and indexed
by the ``state`` token, so several handshakes can be in flight at once
without sharing process-global variables.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from connectors.errors import AlloyError, ValidationError

logger = logging.getLogger(__name__)


class OAuthState(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    AWAITING_CODE = "awaiting_code"
    EXCHANGING = "exchanging"
    ESTABLISHED = "established"
    FAILED = "failed"


_TRANSITIONS = {
    OAuthState.IDLE: {OAuthState.INITIATED, OAuthState.FAILED},
    OAuthState.INITIATED: {OAuthState.AWAITING_CODE, OAuthState.FAILED},
    OAuthState.AWAITING_CODE: {OAuthState.EXCHANGING, OAuthState.FAILED},
    OAuthState.EXCHANGING: {OAuthState.ESTABLISHED, OAuthState.FAILED},
    OAuthState.ESTABLISHED: set(),
    OAuthState.FAILED: set(),
}

_TERMINAL = {OAuthState.ESTABLISHED, OAuthState.FAILED}


class OAuthSessionView(BaseModel):
    """Serializable snapshot of a session (no secrets)."""

    session_id: str
    connector_id: str
    redirect_uri: Optional[str] = None
    state: Optional[str] = None
    credential_id: Optional[str] = None
    status: OAuthState
    connection_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


class OAuthSession:
    """One OAuth handshake, from initiation to a terminal state."""

    def __init__(
        self,
        connector_id: str,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
    ) -> None:
        self.session_id = uuid.uuid4().hex
        self.connector_id = connector_id
        self.redirect_uri = redirect_uri
        self.state = state or secrets.token_urlsafe(16)
        self.credential_id: Optional[str] = None
        self.oauth_url: Optional[str] = None
        self.status = OAuthState.IDLE
        self.connection_id: Optional[str] = None
        self.error: Optional[AlloyError] = None
        self.created_at = datetime.now(timezone.utc)
        self.lock = asyncio.Lock()
        self._done = asyncio.Event()

    def __repr__(self) -> str:
        return f"<OAuthSession {self.session_id[:8]} {self.connector_id} {self.status.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    def transition(self, new_status: OAuthState) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise ValidationError(
                f"Invalid OAuth session transition {self.status.value} → {new_status.value}"
            )
        logger.debug("Session %s: %s → %s", self.session_id[:8], self.status.value, new_status.value)
        self.status = new_status
        if new_status in _TERMINAL:
            self._done.set()

    def establish(self, connection_id: str, credential_id: Optional[str] = None) -> None:
        if self.status != OAuthState.EXCHANGING:
            self.transition(OAuthState.EXCHANGING)
        self.connection_id = connection_id
        if credential_id:
            self.credential_id = credential_id
        self.transition(OAuthState.ESTABLISHED)

    def fail(self, error: AlloyError) -> None:
        """Move to FAILED from any non-terminal state."""
        if self.is_terminal:
            return
        self.error = error
        self.transition(OAuthState.FAILED)

    async def wait(self) -> None:
        await self._done.wait()

    def snapshot(self) -> OAuthSessionView:
        return OAuthSessionView(
            session_id=self.session_id,
            connector_id=self.connector_id,
            redirect_uri=self.redirect_uri,
            state=self.state,
            credential_id=self.credential_id,
            status=self.status,
            connection_id=self.connection_id,
            error=self.error.message if self.error else None,
            created_at=self.created_at,
        )


class SessionStore:
    """In-memory sessions keyed by id, indexed by state token."""

    def __init__(self, ttl_seconds: int = 600) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sessions: Dict[str, OAuthSession] = {}
        self._by_state: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: OAuthSession) -> OAuthSession:
        self.purge_expired()
        self._sessions[session.session_id] = session
        if session.state:
            self._by_state[session.state] = session.session_id
        return session

    def get(self, session_id: str) -> Optional[OAuthSession]:
        return self._sessions.get(session_id)

    def get_by_state(self, state: Optional[str]) -> Optional[OAuthSession]:
        if not state:
            return None
        session_id = self._by_state.get(state)
        return self._sessions.get(session_id) if session_id else None

    def latest_pending(self, connector_id: Optional[str] = None) -> Optional[OAuthSession]:
        """Most recently created non-terminal session, optionally for one connector."""
        pending: List[OAuthSession] = [
            s for s in self._sessions.values()
            if not s.is_terminal and (connector_id is None or s.connector_id == connector_id)
        ]
        if not pending:
            return None
        return max(pending, key=lambda s: s.created_at)

    def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session and self._by_state.get(session.state) == session_id:
            del self._by_state[session.state]

    def purge_expired(self) -> int:
        """Drop sessions older than the TTL.  Returns how many were removed."""
        cutoff = datetime.now(timezone.utc) - self._ttl
        expired = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
        for sid in expired:
            self.remove(sid)
        if expired:
            logger.info("Purged %d expired OAuth session(s)", len(expired))
        return len(expired)
