"""
FastAPI dependencies (shared across routes).

Long-lived collaborators are created once at startup and kept on
``app.state``; routes pull them from there so tests can swap them.
"""

from __future__ import annotations

from fastapi import Request

from config.settings import Settings
from connectors.alloy_client import AlloyClient
from connectors.errors import ConfigurationError
from connectors.oauth_flow import OAuthCallbackHandler


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_alloy_client(request: Request) -> AlloyClient:
    client = getattr(request.app.state, "alloy_client", None)
    if client is None:
        raise ConfigurationError("Alloy client is not initialised")
    return client


def get_oauth_handler(request: Request) -> OAuthCallbackHandler:
    handler = getattr(request.app.state, "oauth_handler", None)
    if handler is None:
        raise ConfigurationError("OAuth handler is not initialised")
    return handler
