"""
AlloyClient — authenticated calls to the Alloy Connectivity API.

Covers the credential endpoints used by the OAuth flow (initiate, callback
exchange, list, detail) and the generic action-execution endpoint used for
downstream reads and writes.  Every method is a single network call; retry
and discovery policy lives in ``connectors.oauth_flow``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import Settings
from connectors.errors import (
    AuthorizationError,
    BrokerError,
    ConfigurationError,
    TransientNetworkError,
    ValidationError,
    error_for_status,
    error_message,
)
from connectors.models import Credential, ExchangeResult, OAuthInitiation
from connectors.redaction import mask_secret, redact_token_info, strip_tokens

logger = logging.getLogger(__name__)

# Connectors that Alloy only exposes through OAuth 2.0.
OAUTH_ONLY_CONNECTORS = frozenset({"notion"})


def _optional_id(value: Any) -> Optional[str]:
    """Ids come back as strings or numbers; keep them as strings."""
    return str(value) if value not in (None, "") else None


def _unwrap(payload: Any) -> Any:
    """Alloy sometimes wraps results as ``{"data": ...}``."""
    if isinstance(payload, dict) and "data" in payload and payload["data"] is not None:
        return payload["data"]
    return payload


class AlloyClient:
    """Thin async wrapper over the Alloy credential and action endpoints."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.alloy_base_url,
            headers={
                "Authorization": f"Bearer {settings.alloy_api_key}",
                "x-api-version": settings.alloy_api_version,
                "Content-Type": "application/json",
            },
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "AlloyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def user_id(self) -> str:
        return self._settings.alloy_user_id

    def _require_user_id(self) -> str:
        if not self._settings.alloy_user_id:
            raise ConfigurationError(
                "ALLOY_USER_ID environment variable is required",
                variable="ALLOY_USER_ID",
            )
        return self._settings.alloy_user_id

    # ── Transport ───────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one request and translate failures into the error taxonomy."""
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Alloy %s %s timed out", method, path)
            raise TransientNetworkError(f"Timed out calling Alloy: {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Alloy %s %s failed: %s", method, path, exc)
            raise TransientNetworkError(f"Could not reach Alloy: {exc}") from exc

        if resp.is_success:
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as exc:
                raise BrokerError(
                    f"Alloy returned a non-JSON response for {method} {path}",
                    status_code=502,
                    details={"body": resp.text[:500]},
                ) from exc

        try:
            payload: Any = resp.json()
        except ValueError:
            payload = {"body": resp.text[:500]}

        status = resp.status_code
        message = error_message(payload, f"Alloy API error {status} for {method} {path}")
        logger.error("Alloy %s %s → %s: %s", method, path, status, message)
        raise error_for_status(status, message, payload)

    # ── Credentials ─────────────────────────────────────────────────────

    async def initiate_oauth(self, connector_id: str, redirect_uri: str) -> OAuthInitiation:
        """
        Start an OAuth handshake for ``connector_id``.

        Returns the URL the user's browser must visit and, when the broker
        pre-allocates one, the provisional ``credentialId``.
        """
        user_id = self._require_user_id()
        body = {
            "connectorId": connector_id,
            "authenticationType": "oauth2",
            "redirectUri": redirect_uri,
            "userId": user_id,
        }
        logger.info("Initiating OAuth for %s (redirect=%s)", connector_id, redirect_uri)
        data = await self._request("POST", f"/connectors/{connector_id}/credentials", json=body)

        oauth_url = data.get("oauthUrl") if isinstance(data, dict) else None
        if not oauth_url:
            raise AuthorizationError(
                f"Connector '{connector_id}' did not return an OAuth URL; "
                "it may not support OAuth 2.0",
                status_code=400,
                details=data,
            )
        return OAuthInitiation(oauth_url=oauth_url, credential_id=_optional_id(data.get("credentialId")))

    async def exchange_callback(
        self,
        connector_id: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
        credential_id: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> ExchangeResult:
        """
        Complete the handshake with either an authorization code or a
        pre-obtained access/refresh token pair.
        """
        if not code and not (access_token and refresh_token):
            raise ValidationError(
                "Either authorization code or both access_token and refresh_token are required"
            )
        user_id = self._require_user_id()

        body: Dict[str, Any]
        if code:
            body = {"code": code, "userId": user_id}
        else:
            body = {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "userId": user_id,
            }
        if credential_id:
            body["credentialId"] = credential_id
        if state:
            body["state"] = state

        logger.info(
            "Exchanging OAuth callback for %s (via=%s, credentialId=%s)",
            connector_id,
            "code" if code else "tokens",
            credential_id or "none",
        )
        data = await self._request(
            "POST", f"/connectors/{connector_id}/credentials/callback", json=body
        )
        if not isinstance(data, dict):
            data = {}

        connection_id = data.get("connectionId") or data.get("id")
        if not connection_id:
            raise BrokerError(
                "Alloy callback response did not include a connection id",
                details=strip_tokens(data),
            )
        return ExchangeResult(
            connection_id=str(connection_id),
            credential_id=_optional_id(data.get("credentialId") or data.get("id")),
        )

    async def list_connections(self) -> List[Credential]:
        """All credentials owned by the configured user."""
        user_id = self._require_user_id()
        data = await self._request("GET", f"/users/{user_id}/credentials")

        items = _unwrap(data)
        if isinstance(items, dict):
            items = items.get("credentials") or items.get("items") or []
        if not isinstance(items, list):
            items = []
        return [Credential.from_api(item) for item in items if isinstance(item, dict)]

    async def get_connection(self, connection_id: str) -> Credential:
        data = await self._request("GET", f"/credentials/{connection_id}")
        raw = _unwrap(data)
        if not isinstance(raw, dict):
            raise BrokerError(f"Unexpected credential payload for {connection_id}", details=data)
        credential = Credential.from_api(raw)
        if not credential.connection_id:
            credential.connection_id = connection_id
        return credential

    async def get_connection_tokens(self, connection_id: str) -> Dict[str, Any]:
        """Connection detail plus masked token metadata (never raw tokens)."""
        credential = await self.get_connection(connection_id)
        token_info = redact_token_info(credential.raw)
        return {
            "connection": strip_tokens(credential.raw),
            "hasTokens": token_info["hasTokens"],
            "tokenInfo": token_info,
            "alloyApiKey": mask_secret(self._settings.alloy_api_key),
        }

    async def create_connection_with_api_key(self, connector_id: str, api_key: str) -> ExchangeResult:
        """Create a credential from a pre-issued key instead of OAuth."""
        if connector_id in OAUTH_ONLY_CONNECTORS:
            raise AuthorizationError(
                f"{connector_id} connector only supports OAuth 2.0 authentication; "
                "use POST /api/oauth/initiate instead",
                status_code=400,
                details={"useOAuth": True, "endpoint": "POST /api/oauth/initiate"},
            )
        if not api_key:
            raise ValidationError("API key is required. Provide it in the request body.")
        user_id = self._require_user_id()

        logger.info("Creating %s credential with API key %s", connector_id, mask_secret(api_key))
        data = await self._request(
            "POST",
            f"/connectors/{connector_id}/credentials",
            json={
                "connectorId": connector_id,
                "authenticationType": "apiKey",
                "apiKey": api_key,
                "userId": user_id,
            },
        )
        if not isinstance(data, dict):
            data = {}
        connection_id = data.get("connectionId") or data.get("credentialId") or data.get("id")
        if not connection_id:
            raise BrokerError("Alloy did not return a credential id", details=strip_tokens(data))
        return ExchangeResult(
            connection_id=str(connection_id),
            credential_id=_optional_id(data.get("credentialId") or data.get("id")),
        )

    async def register_redirect_uri(self, connector_id: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Check that Alloy accepts ``redirect_uri`` by initiating a handshake
        with it.  Broker rejections are reported, not raised.
        """
        try:
            initiation = await self.initiate_oauth(connector_id, redirect_uri)
        except BrokerError as exc:
            return {
                "success": False,
                "message": f"Alloy rejected the redirect URI: {exc.message}",
                "details": exc.details,
            }
        return {
            "success": True,
            "message": "Redirect URI accepted by Alloy",
            "oauthUrl": initiation.oauth_url,
            "credentialId": initiation.credential_id,
        }

    # ── Actions ─────────────────────────────────────────────────────────

    async def execute_action(
        self,
        connector_id: str,
        action_id: str,
        credential_id: str,
        *,
        request_body: Any = None,
        path_params: Optional[Dict[str, str]] = None,
        query_params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Run a named downstream action through the stored connection."""
        if not credential_id:
            raise ValidationError("A connection id is required to execute actions")

        body: Dict[str, Any] = {"credentialId": credential_id}
        if request_body is not None:
            body["requestBody"] = request_body
        if path_params:
            body["pathParams"] = path_params
        if query_params:
            body["queryParameters"] = query_params
        if headers:
            body["headers"] = headers

        logger.debug("Executing %s/%s", connector_id, action_id)
        data = await self._request(
            "POST", f"/connectors/{connector_id}/actions/{action_id}/execute", json=body
        )
        return _unwrap(data)
