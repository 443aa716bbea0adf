import pytest

from config.settings import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        alloy_api_key="sk_test_1234567890abcdef",
        alloy_user_id="user_123",
        alloy_base_url="https://alloy.test",
        oauth_redirect_uri=None,
        connection_id=None,
        discovery_delay_seconds=0,
        oauth_session_timeout_seconds=5,
    )
