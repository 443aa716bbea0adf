"""
Alloy Connectivity backend — application entry point.
"""

from __future__ import annotations

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import callback_router, router as api_router
from config.log_setup import configure_logging
from config.settings import Settings, config, load_config
from connectors.alloy_client import AlloyClient
from connectors.notion import make_connection_verifier
from connectors.oauth_flow import OAuthCallbackHandler
from connectors.redaction import install_redacting_filter

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    alloy_client: Optional[AlloyClient] = None,
) -> FastAPI:
    settings = settings or config

    app = FastAPI(
        title="Alloy Connectivity Backend",
        version="1.0.0",
        description="OAuth account linking and Notion actions through Alloy.",
    )
    app.state.settings = settings

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(api_router)
    app.include_router(callback_router)

    @app.on_event("startup")
    async def on_startup():
        load_config(settings)
        # uvicorn configures its own loggers before importing the app.
        install_redacting_filter()
        client = alloy_client or AlloyClient(settings)
        app.state.alloy_client = client
        app.state.oauth_handler = OAuthCallbackHandler(
            client,
            settings,
            verifier=make_connection_verifier(client, settings),
        )
        logger.info("OAuth callback URL: %s", settings.effective_redirect_uri())
        logger.info("Make sure this exact URL is registered in your Alloy account.")

    @app.on_event("shutdown")
    async def on_shutdown():
        client = getattr(app.state, "alloy_client", None)
        if client is not None:
            await client.aclose()

    return app


configure_logging(config.debug)
app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
