"""
REST API routes.

``router`` carries the JSON endpoints under ``/api``; ``callback_router``
carries the browser-facing ``/oauth/callback`` page, which the local CLI
listener mounts on its own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse

from api.dependencies import get_alloy_client, get_oauth_handler, get_settings
from config.settings import Settings
from connectors.alloy_client import AlloyClient
from connectors.errors import NotFoundError, ValidationError
from connectors.oauth_flow import CallbackParams, OAuthCallbackHandler
from connectors.pages import error_page, fragment_page, success_page
from connectors.redaction import mask_secret
from utils.schemas import (
    ApiKeyConnectionRequest,
    CallbackRequest,
    InitiateRequest,
    RegisterRedirectRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["alloy"])
callback_router = APIRouter(tags=["oauth"])

AVAILABLE_CONNECTORS = [
    {
        "id": "notion",
        "name": "Notion",
        "category": ["productivity"],
        "description": "Connect to Notion workspace to manage pages, databases, and blocks",
    },
]

_SECRET_PARAMS = {"code", "access_token", "refresh_token"}

ENDPOINTS = {
    "health": "GET /api/health",
    "configCheck": "GET /api/config/check",
    "initiateOAuth": "POST /api/oauth/initiate",
    "oauthCallback": "GET /oauth/callback",
    "oauthCallbackApi": "POST /api/oauth/callback",
    "oauthSession": "GET /api/oauth/sessions/:sessionId",
    "createWithApiKey": "POST /api/oauth/create-with-api-key",
    "registerRedirectUri": "POST /api/oauth/register-redirect-uri",
    "listConnections": "GET /api/connections",
    "getConnection": "GET /api/connections/:connectionId",
    "getConnectionTokens": "GET /api/connections/:connectionId/tokens",
    "listConnectors": "GET /api/connectors",
}


# ── Status ─────────────────────────────────────────────────────────────


@router.get("/health")
async def health(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "message": "Alloy Connectivity Backend is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "port": settings.port,
        "callbackUrl": settings.effective_redirect_uri(),
    }


@router.get("/config/check")
async def config_check(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    """Which settings are present.  The API key only appears masked."""
    ready = bool(settings.alloy_api_key and settings.alloy_user_id)
    return {
        "success": True,
        "config": {
            "hasApiKey": bool(settings.alloy_api_key),
            "hasUserId": bool(settings.alloy_user_id),
            "baseUrl": settings.alloy_base_url,
            "environment": settings.alloy_environment,
            "apiKeyPreview": mask_secret(settings.alloy_api_key),
            "oauthRedirectUri": settings.effective_redirect_uri(),
            "hasCustomRedirectUri": bool(settings.oauth_redirect_uri),
        },
        "status": {"ready": ready},
    }


@router.get("/connectors")
async def list_connectors() -> Dict[str, Any]:
    return {
        "success": True,
        "connectors": AVAILABLE_CONNECTORS,
        "count": len(AVAILABLE_CONNECTORS),
    }


# ── OAuth ──────────────────────────────────────────────────────────────


@router.post("/oauth/initiate")
async def initiate_oauth(
    body: InitiateRequest,
    handler: OAuthCallbackHandler = Depends(get_oauth_handler),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Start a handshake; the frontend sends the user to ``oauthUrl``."""
    if not body.connector_id:
        raise ValidationError("connectorId is required")

    if body.connector_id == "notion" and settings.notion_internal_token:
        logger.warning("NOTION_INTERNAL_TOKEN only serves direct Notion calls; Alloy still needs OAuth")

    session = await handler.initiate(body.connector_id, body.redirect_uri)
    return {
        "success": True,
        "oauthUrl": session.oauth_url,
        "credentialId": session.credential_id,
        "redirectUri": session.redirect_uri,
        "sessionId": session.session_id,
        "state": session.state,
    }


@router.post("/oauth/callback")
async def oauth_callback_api(
    body: CallbackRequest,
    handler: OAuthCallbackHandler = Depends(get_oauth_handler),
) -> Dict[str, Any]:
    """Complete a handshake with a code or token pair supplied by the caller."""
    params = CallbackParams(
        code=body.code,
        state=body.state,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        credential_id=body.credential_id,
        connector_id=body.connector_id,
    )
    if not params.has_grant:
        raise ValidationError(
            "Either authorization code or both access_token and refresh_token are required"
        )

    session = handler.resolve_session(params)
    if params.credential_id and not session.credential_id:
        session.credential_id = params.credential_id

    result = await handler.exchange(
        session,
        code=params.code,
        state=params.state,
        access_token=params.access_token,
        refresh_token=params.refresh_token,
    )
    return {
        "success": True,
        "connectionId": result.connection_id,
        "credentialId": result.credential_id,
        "connectorId": session.connector_id,
    }


@router.get("/oauth/sessions/{session_id}")
async def get_oauth_session(
    session_id: str,
    handler: OAuthCallbackHandler = Depends(get_oauth_handler),
) -> Dict[str, Any]:
    session = handler.store.get(session_id)
    if session is None:
        raise NotFoundError(f"OAuth session {session_id} not found")
    return {"success": True, "session": session.snapshot().model_dump(mode="json")}


@router.post("/oauth/create-with-api-key")
async def create_with_api_key(
    body: ApiKeyConnectionRequest,
    client: AlloyClient = Depends(get_alloy_client),
) -> Dict[str, Any]:
    if not body.connector_id:
        raise ValidationError("connectorId is required")

    result = await client.create_connection_with_api_key(body.connector_id, body.api_key or "")
    return {
        "success": True,
        "connectionId": result.connection_id,
        "credentialId": result.credential_id,
        "message": "Connection created successfully using API key authentication",
    }


@router.post("/oauth/register-redirect-uri")
async def register_redirect_uri(
    body: RegisterRedirectRequest,
    client: AlloyClient = Depends(get_alloy_client),
    settings: Settings = Depends(get_settings),
):
    redirect_uri = settings.effective_redirect_uri(body.redirect_uri)
    result = await client.register_redirect_uri(body.connector_id, redirect_uri)
    result.update({"redirectUri": redirect_uri, "connectorId": body.connector_id})
    if not result["success"]:
        result["dashboardInstructions"] = {
            "step1": "Go to https://app.runalloy.com and sign in",
            "step2": f"Find the {body.connector_id} connector settings",
            "step3": f"Add {redirect_uri} to the list of allowed redirect URIs",
        }
        return JSONResponse(result, status_code=400)
    return result


# ── Connections ────────────────────────────────────────────────────────


@router.get("/connections")
async def list_connections(
    connector_id: Optional[str] = Query(None, alias="connectorId"),
    client: AlloyClient = Depends(get_alloy_client),
) -> Dict[str, Any]:
    """All credentials for the configured user, optionally for one connector."""
    connections = await client.list_connections()
    if connector_id:
        connections = [c for c in connections if c.matches(connector_id)]
    return {
        "success": True,
        "connections": [c.public_dict() for c in connections],
        "count": len(connections),
    }


@router.get("/connections/{connection_id}")
async def get_connection(
    connection_id: str,
    tokens: bool = False,
    client: AlloyClient = Depends(get_alloy_client),
) -> Dict[str, Any]:
    if tokens:
        info = await client.get_connection_tokens(connection_id)
        return {
            "success": True,
            "connection": info["connection"],
            "tokens": info["tokenInfo"],
            "hasTokens": info["hasTokens"],
            "alloyApiKey": info["alloyApiKey"],
        }
    credential = await client.get_connection(connection_id)
    return {"success": True, "connection": credential.public_dict()}


@router.get("/connections/{connection_id}/tokens")
async def get_connection_tokens(
    connection_id: str,
    client: AlloyClient = Depends(get_alloy_client),
) -> Dict[str, Any]:
    """Masked token metadata; raw tokens are never returned."""
    info = await client.get_connection_tokens(connection_id)
    return {
        "success": True,
        "connectionId": connection_id,
        "hasTokens": info["hasTokens"],
        "tokenInfo": info["tokenInfo"],
        "alloyApiKey": info["alloyApiKey"],
        "connectionStatus": info["connection"].get("status"),
    }


# ── Browser callback ───────────────────────────────────────────────────


@callback_router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
    request: Request,
    handler: OAuthCallbackHandler = Depends(get_oauth_handler),
) -> HTMLResponse:
    """
    Provider redirect target.

    Renders success, a provider/exchange error, or the fragment-reader page
    when the code did not arrive in the query string.
    """
    params = CallbackParams.from_query(request.query_params)
    logger.info(
        "OAuth callback received (code=%s, tokens=%s, error=%s)",
        "present" if params.code else "absent",
        "present" if params.has_token_pair else "absent",
        params.error or "none",
    )

    session = handler.resolve_session(params)
    outcome = await handler.handle_callback(session, params)

    if outcome.kind == "established":
        return HTMLResponse(
            success_page(
                outcome.connection_id,
                outcome.connector_id,
                credential_id=outcome.credential_id,
                discovered=outcome.discovered,
            )
        )
    if outcome.kind == "needs_fragment":
        return HTMLResponse(fragment_page(str(request.url.replace(query=""))))

    return HTMLResponse(
        error_page(outcome.error or "OAuth flow failed", params.error_description),
        status_code=outcome.status_code,
    )


@callback_router.get("/oauth/callback/test")
async def oauth_callback_test(request: Request) -> Dict[str, Any]:
    return {
        "success": True,
        "message": "Callback endpoint is reachable!",
        "receivedAt": datetime.now(timezone.utc).isoformat(),
        "queryParams": {
            key: mask_secret(value, visible=4) if key in _SECRET_PARAMS else value
            for key, value in request.query_params.items()
        },
    }
