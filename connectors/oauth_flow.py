"""
OAuthCallbackHandler — drives an OAuth session from initiation to a
connection id.

State machine::

    IDLE → INITIATED → AWAITING_CODE → EXCHANGING → ESTABLISHED
                                   ↘        ↘
                                    FAILED   FAILED

Authorization codes can reach us three ways, depending on how the
downstream provider behaves:

  • in the query string: exchanged directly;
  • in the URL fragment: the browser never sends it, so the callback page
    reads ``window.location.hash`` and re-navigates with the code promoted
    into the query string (``needs_fragment`` outcome);
  • not at all: Alloy finished the handshake server-side, so after a short
    delay we list credentials and take the newest one for the connector.

If the exchange fails and no ``credentialId`` was used, it is retried once
with the most recent credential for the connector.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel

from config.settings import Settings
from connectors.alloy_client import AlloyClient
from connectors.errors import (
    AlloyError,
    BrokerError,
    OAuthProviderError,
    OAuthTimeoutError,
    ValidationError,
)
from connectors.models import ExchangeResult, get_connection_id, most_recent
from connectors.session_store import OAuthSession, OAuthState, SessionStore

logger = logging.getLogger(__name__)

ConnectionVerifier = Callable[[str, str], Awaitable[bool]]


class CallbackParams(BaseModel):
    """Everything the provider redirect (or API caller) may hand us."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    credential_id: Optional[str] = None
    connector_id: Optional[str] = None
    extracted_from_fragment: bool = False

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "CallbackParams":
        def _get(key: str) -> Optional[str]:
            value = query.get(key)
            return value or None

        return cls(
            code=_get("code"),
            state=_get("state"),
            error=_get("error"),
            error_description=_get("error_description"),
            access_token=_get("access_token"),
            refresh_token=_get("refresh_token"),
            credential_id=_get("credentialId"),
            connector_id=_get("connectorId"),
            extracted_from_fragment=query.get("_extracted_from_fragment") == "true",
        )

    @property
    def has_token_pair(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    @property
    def has_grant(self) -> bool:
        return bool(self.code) or self.has_token_pair


class CallbackOutcome(BaseModel):
    kind: str  # "established" | "failed" | "needs_fragment"
    connector_id: str
    connection_id: Optional[str] = None
    credential_id: Optional[str] = None
    discovered: bool = False
    error: Optional[str] = None
    status_code: int = 200

    @classmethod
    def established(cls, session: OAuthSession, discovered: bool = False) -> "CallbackOutcome":
        return cls(
            kind="established",
            connector_id=session.connector_id,
            connection_id=session.connection_id,
            credential_id=session.credential_id,
            discovered=discovered,
        )

    @classmethod
    def failed(cls, session: OAuthSession) -> "CallbackOutcome":
        error = session.error
        return cls(
            kind="failed",
            connector_id=session.connector_id,
            error=error.message if error else "OAuth flow failed",
            status_code=error.status_code if error else 500,
        )


def _state_from_url(url: str) -> Optional[str]:
    """The ``state`` Alloy embedded in the authorization URL, if any."""
    values = parse_qs(urlparse(url).query).get("state")
    return values[0] if values else None


class OAuthCallbackHandler:
    """Orchestrates initiation, callback handling and the exchange."""

    def __init__(
        self,
        client: AlloyClient,
        settings: Settings,
        store: Optional[SessionStore] = None,
        *,
        verifier: Optional[ConnectionVerifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self.store = store or SessionStore(ttl_seconds=settings.oauth_session_timeout_seconds * 2)
        self._verifier = verifier
        self._sleep = sleep

    # ── Initiate ────────────────────────────────────────────────────────

    async def initiate(
        self,
        connector_id: str,
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
    ) -> OAuthSession:
        """``IDLE → INITIATED``.  The returned session carries the OAuth URL."""
        redirect_uri = self.settings.effective_redirect_uri(redirect_uri)
        session = OAuthSession(connector_id, redirect_uri=redirect_uri, state=state)
        try:
            initiation = await self.client.initiate_oauth(connector_id, redirect_uri)
        except AlloyError as exc:
            session.fail(exc)
            raise

        session.oauth_url = initiation.oauth_url
        session.credential_id = initiation.credential_id
        # Alloy may embed its own state; that is what comes back on the redirect.
        provider_state = _state_from_url(initiation.oauth_url)
        if provider_state and not state:
            session.state = provider_state
        session.transition(OAuthState.INITIATED)
        self.store.add(session)

        logger.info(
            "OAuth initiated for %s (session=%s, credentialId=%s)",
            connector_id,
            session.session_id[:8],
            session.credential_id or "none",
        )
        return session

    def resolve_session(self, params: CallbackParams) -> OAuthSession:
        """
        Find the session a callback belongs to: by state token, else the
        newest pending session for the connector, else a fresh ad-hoc one
        (callbacks can arrive for handshakes started elsewhere).
        """
        session = self.store.get_by_state(params.state)
        if session:
            return session

        connector_id = params.connector_id or self.settings.default_connector_id
        session = self.store.latest_pending(connector_id)
        if session:
            return session

        logger.info("No pending session for %s callback; starting an ad-hoc one", connector_id)
        session = OAuthSession(connector_id, state=params.state)
        session.transition(OAuthState.INITIATED)
        return self.store.add(session)

    # ── Callback ────────────────────────────────────────────────────────

    async def handle_callback(self, session: OAuthSession, params: CallbackParams) -> CallbackOutcome:
        """
        Process one redirect for ``session``.

        Never raises ``AlloyError``; failures come back as a ``failed``
        outcome with the session moved to ``FAILED``.
        """
        if session.status == OAuthState.ESTABLISHED:
            return CallbackOutcome.established(session)
        if session.status == OAuthState.FAILED:
            return CallbackOutcome.failed(session)

        if session.status == OAuthState.INITIATED:
            session.transition(OAuthState.AWAITING_CODE)

        if params.error:
            logger.error("OAuth provider error: %s %s", params.error, params.error_description or "")
            session.fail(OAuthProviderError(params.error, params.error_description))
            return CallbackOutcome.failed(session)

        if params.credential_id and not session.credential_id:
            session.credential_id = params.credential_id

        try:
            if params.has_grant:
                await self.exchange(
                    session,
                    code=params.code,
                    state=params.state,
                    access_token=params.access_token,
                    refresh_token=params.refresh_token,
                )
                return CallbackOutcome.established(session)

            return await self._recover_without_code(session, params)
        except AlloyError as exc:
            session.fail(exc)
            return CallbackOutcome.failed(session)

    async def _recover_without_code(self, session: OAuthSession, params: CallbackParams) -> CallbackOutcome:
        logger.info("No authorization code in callback; looking for a server-side connection")
        await self._sleep(self.settings.discovery_delay_seconds)

        try:
            connection_id = await self.discover_connection(session.connector_id)
        except BrokerError as exc:
            logger.warning("Connection discovery failed: %s", exc.message)
            connection_id = None

        if connection_id and await self._verify(session.connector_id, connection_id):
            async with session.lock:
                if not session.is_terminal:
                    session.establish(connection_id)
            logger.info("Discovered %s connection %s", session.connector_id, connection_id)
            return CallbackOutcome.established(session, discovered=True)

        if params.extracted_from_fragment:
            raise ValidationError("No authorization code found in the callback URL or its fragment")

        return CallbackOutcome(kind="needs_fragment", connector_id=session.connector_id)

    async def _verify(self, connector_id: str, connection_id: str) -> bool:
        if self._verifier is None:
            return True
        try:
            return await self._verifier(connector_id, connection_id)
        except AlloyError as exc:
            logger.warning("Connection %s found but test failed: %s", connection_id, exc.message)
            return False

    # ── Exchange ────────────────────────────────────────────────────────

    async def exchange(
        self,
        session: OAuthSession,
        *,
        code: Optional[str] = None,
        state: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> ExchangeResult:
        """
        ``AWAITING_CODE → EXCHANGING → ESTABLISHED``.

        At most one exchange per session succeeds; later calls return the
        established result.  Raises on failure after moving to ``FAILED``.
        """
        if not code and not (access_token and refresh_token):
            raise ValidationError(
                "Either authorization code or both access_token and refresh_token are required"
            )

        async with session.lock:
            if session.status == OAuthState.ESTABLISHED:
                return ExchangeResult(
                    connection_id=session.connection_id,
                    credential_id=session.credential_id,
                )
            if session.status == OAuthState.FAILED:
                raise session.error or ValidationError("OAuth session already failed")
            if session.status == OAuthState.INITIATED:
                session.transition(OAuthState.AWAITING_CODE)
            session.transition(OAuthState.EXCHANGING)

            try:
                result = await self._exchange_with_retry(
                    session,
                    code=code,
                    state=state,
                    access_token=access_token,
                    refresh_token=refresh_token,
                )
            except AlloyError as exc:
                session.fail(exc)
                raise

            session.establish(result.connection_id, result.credential_id)
            logger.info("Connection established: %s", result.connection_id)
            return result

    async def _exchange_with_retry(self, session: OAuthSession, **grant: Optional[str]) -> ExchangeResult:
        used_credential = session.credential_id
        try:
            return await self.client.exchange_callback(
                session.connector_id, credential_id=used_credential, **grant
            )
        except BrokerError as exc:
            if used_credential:
                raise
            logger.warning("Callback exchange failed (%s); retrying with a recent credential", exc.message)

            try:
                recent_id = await self.discover_connection(session.connector_id)
            except BrokerError:
                raise exc
            if not recent_id:
                raise

            try:
                result = await self.client.exchange_callback(
                    session.connector_id, credential_id=recent_id, **grant
                )
            except BrokerError as retry_exc:
                logger.error("Retry with credentialId %s also failed: %s", recent_id, retry_exc.message)
                raise exc from retry_exc

            session.credential_id = recent_id
            return result

    # ── Discovery ───────────────────────────────────────────────────────

    async def discover_connection(self, connector_id: str) -> Optional[str]:
        """Id of the newest credential for ``connector_id``, or None.  Read-only."""
        connections = await self.client.list_connections()
        raw = [c.raw or {"connectorId": c.connector_id, "id": c.connection_id} for c in connections]
        recent = most_recent(raw, connector_id)
        logger.debug("Discovery for %s: %d credential(s) total", connector_id, len(raw))
        return get_connection_id(recent) if recent else None

    # ── Waiting ─────────────────────────────────────────────────────────

    async def wait_for_completion(
        self,
        session: OAuthSession,
        timeout: Optional[float] = None,
    ) -> OAuthSession:
        """
        Block until the session is terminal.

        Returns the established session; raises the session error on
        ``FAILED`` and ``OAuthTimeoutError`` when ``timeout`` runs out.
        """
        if timeout is None:
            timeout = self.settings.oauth_session_timeout_seconds
        try:
            await asyncio.wait_for(session.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            session.fail(OAuthTimeoutError(f"No OAuth callback received within {timeout:g}s"))
            logger.error("OAuth session %s timed out", session.session_id[:8])

        if session.status == OAuthState.FAILED:
            raise session.error
        return session
