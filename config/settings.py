"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional

from connectors.errors import ConfigurationError


class Settings(BaseSettings):
    # ── Alloy Connectivity API ───────────────────────────────────────────
    alloy_api_key: str = ""
    alloy_user_id: str = ""
    alloy_base_url: str = "https://production.runalloy.com"
    alloy_environment: str = "production"   # "development" | "production"
    alloy_api_version: str = "2025-09"      # sent as x-api-version

    # ── OAuth ────────────────────────────────────────────────────────────
    oauth_redirect_uri: Optional[str] = None
    oauth_session_timeout_seconds: int = 300
    discovery_delay_seconds: float = 2.0    # wait before guessing a server-side connection
    default_connector_id: str = "notion"

    # ── Notion ───────────────────────────────────────────────────────────
    notion_internal_token: Optional[str] = None   # direct Notion access, never logged
    notion_version: str = "2022-06-28"
    connection_id: Optional[str] = None
    env_file_path: str = ".env"                   # where CONNECTION_ID gets written back

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 3000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    http_timeout_seconds: float = 30.0

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @property
    def default_redirect_uri(self) -> str:
        return f"http://localhost:{self.port}/oauth/callback"

    def effective_redirect_uri(self, override: Optional[str] = None) -> str:
        """Request override, then OAUTH_REDIRECT_URI, then the local default."""
        return override or self.oauth_redirect_uri or self.default_redirect_uri


_REQUIRED = (
    ("alloy_api_key", "ALLOY_API_KEY"),
    ("alloy_user_id", "ALLOY_USER_ID"),
)


def load_config(settings: Optional[Settings] = None) -> Settings:
    """
    Return validated settings.

    Raises ``ConfigurationError`` naming the first missing variable.
    """
    settings = settings if settings is not None else Settings()
    for field, env_name in _REQUIRED:
        if not getattr(settings, field):
            raise ConfigurationError(
                f"{env_name} environment variable is required",
                variable=env_name,
            )
    return settings


config = Settings()
