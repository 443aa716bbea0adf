"""
Tests for OAuthCallbackHandler: initiation, callback handling, exchange,
discovery and retry.  The Alloy client is mocked.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from connectors.errors import (
    BrokerError,
    OAuthProviderError,
    OAuthTimeoutError,
    TransientNetworkError,
)
from connectors.models import Credential, ExchangeResult, OAuthInitiation
from connectors.oauth_flow import CallbackParams, OAuthCallbackHandler
from connectors.session_store import OAuthState

OAUTH_URL = "https://api.notion.com/v1/oauth/authorize?client_id=abc&state=xyz"


def _mock_client(credential_id="cred_1", connections=None, exchange=None):
    client = MagicMock()
    client.initiate_oauth = AsyncMock(
        return_value=OAuthInitiation(oauth_url=OAUTH_URL, credential_id=credential_id)
    )
    client.exchange_callback = AsyncMock(
        return_value=exchange or ExchangeResult(connection_id="conn_9", credential_id="cred_1")
    )
    client.list_connections = AsyncMock(
        return_value=[Credential.from_api(c) for c in (connections or [])]
    )
    return client


def _handler(client, settings, **kwargs) -> OAuthCallbackHandler:
    return OAuthCallbackHandler(client, settings, sleep=AsyncMock(), **kwargs)


NOTION_CREDENTIALS = [
    {"credentialId": "cred_old", "connectorId": "notion", "createdAt": "2024-01-01T00:00:00Z"},
    {"credentialId": "cred_new", "connectorId": "notion", "createdAt": "2024-06-01T00:00:00Z"},
    {"credentialId": "cred_slack", "connectorId": "slack", "createdAt": "2025-01-01T00:00:00Z"},
]


class TestInitiate:
    @pytest.mark.asyncio
    async def test_session_is_initiated_and_stored(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)

        session = await handler.initiate("notion")

        assert session.status == OAuthState.INITIATED
        assert session.oauth_url == OAUTH_URL
        assert session.credential_id == "cred_1"
        assert session.state == "xyz"
        assert session.redirect_uri == "http://localhost:3000/oauth/callback"
        assert handler.store.get_by_state("xyz") is session
        client.initiate_oauth.assert_awaited_once_with("notion", "http://localhost:3000/oauth/callback")

    @pytest.mark.asyncio
    async def test_failure_is_raised_and_not_stored(self, settings):
        client = _mock_client()
        client.initiate_oauth.side_effect = BrokerError("unknown connector", status_code=400)
        handler = _handler(client, settings)

        with pytest.raises(BrokerError):
            await handler.initiate("notion")
        assert len(handler.store) == 0


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_code_and_state_are_forwarded(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(code="abc", state="xyz"))

        assert outcome.kind == "established"
        assert outcome.connection_id == "conn_9"
        assert session.status == OAuthState.ESTABLISHED
        client.exchange_callback.assert_awaited_once_with(
            "notion",
            credential_id="cred_1",
            code="abc",
            state="xyz",
            access_token=None,
            refresh_token=None,
        )

    @pytest.mark.asyncio
    async def test_token_pair(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(
            session, CallbackParams(access_token="at", refresh_token="rt")
        )

        assert outcome.kind == "established"
        kwargs = client.exchange_callback.await_args.kwargs
        assert kwargs["access_token"] == "at"
        assert kwargs["refresh_token"] == "rt"

    @pytest.mark.asyncio
    async def test_provider_error(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(
            session,
            CallbackParams(error="access_denied", error_description="User cancelled"),
        )

        assert outcome.kind == "failed"
        assert outcome.status_code == 400
        assert "access_denied" in outcome.error
        assert session.status == OAuthState.FAILED
        assert isinstance(session.error, OAuthProviderError)
        client.exchange_callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exchange_failure_is_an_outcome(self, settings):
        client = _mock_client()
        client.exchange_callback.side_effect = BrokerError("invalid_grant", status_code=400)
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(code="abc", state="xyz"))

        assert outcome.kind == "failed"
        assert outcome.error == "invalid_grant"
        assert session.status == OAuthState.FAILED

    @pytest.mark.asyncio
    async def test_duplicate_callback_does_not_exchange_twice(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)
        session = await handler.initiate("notion")
        params = CallbackParams(code="abc", state="xyz")

        first = await handler.handle_callback(session, params)
        second = await handler.handle_callback(session, params)

        assert first.connection_id == second.connection_id == "conn_9"
        client.exchange_callback.assert_awaited_once()


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_missing_code_discovers_newest_connection(self, settings):
        client = _mock_client(connections=NOTION_CREDENTIALS)
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(state="xyz"))

        assert outcome.kind == "established"
        assert outcome.discovered is True
        assert outcome.connection_id == "cred_new"
        assert session.status == OAuthState.ESTABLISHED
        client.exchange_callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_discovery_waits_first(self, settings):
        client = _mock_client(connections=NOTION_CREDENTIALS)
        sleep = AsyncMock()
        handler = OAuthCallbackHandler(client, settings.model_copy(update={"discovery_delay_seconds": 2.0}), sleep=sleep)
        session = await handler.initiate("notion")

        await handler.handle_callback(session, CallbackParams(state="xyz"))
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_discovery_is_read_only_and_repeatable(self, settings):
        client = _mock_client(connections=NOTION_CREDENTIALS)
        handler = _handler(client, settings)

        first = await handler.discover_connection("notion")
        second = await handler.discover_connection("notion")

        assert first == second == "cred_new"
        client.exchange_callback.assert_not_awaited()
        client.initiate_oauth.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_found_asks_for_fragment(self, settings):
        client = _mock_client(connections=[])
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(state="xyz"))

        assert outcome.kind == "needs_fragment"
        assert session.status == OAuthState.AWAITING_CODE

    @pytest.mark.asyncio
    async def test_nothing_found_after_fragment_fails(self, settings):
        client = _mock_client(connections=[])
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(
            session, CallbackParams(state="xyz", extracted_from_fragment=True)
        )

        assert outcome.kind == "failed"
        assert outcome.status_code == 400
        assert session.status == OAuthState.FAILED

    @pytest.mark.asyncio
    async def test_unverified_connection_is_not_accepted(self, settings):
        client = _mock_client(connections=NOTION_CREDENTIALS)
        verifier = AsyncMock(return_value=False)
        handler = _handler(client, settings, verifier=verifier)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(state="xyz"))

        assert outcome.kind == "needs_fragment"
        verifier.assert_awaited_once_with("notion", "cred_new")

    @pytest.mark.asyncio
    async def test_listing_failure_is_not_fatal(self, settings):
        client = _mock_client()
        client.list_connections.side_effect = TransientNetworkError("down")
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        outcome = await handler.handle_callback(session, CallbackParams(state="xyz"))
        assert outcome.kind == "needs_fragment"


class TestExchangeRetry:
    @pytest.mark.asyncio
    async def test_retries_once_with_recent_credential(self, settings):
        client = _mock_client(credential_id=None, connections=NOTION_CREDENTIALS)
        client.exchange_callback.side_effect = [
            BrokerError("credential required"),
            ExchangeResult(connection_id="conn_2", credential_id="cred_new"),
        ]
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        result = await handler.exchange(session, code="abc", state="xyz")

        assert result.connection_id == "conn_2"
        assert client.exchange_callback.await_count == 2
        assert client.exchange_callback.await_args_list[0].kwargs["credential_id"] is None
        assert client.exchange_callback.await_args_list[1].kwargs["credential_id"] == "cred_new"
        assert session.status == OAuthState.ESTABLISHED

    @pytest.mark.asyncio
    async def test_failed_retry_raises_original_error(self, settings):
        original = BrokerError("credential required")
        client = _mock_client(credential_id=None, connections=NOTION_CREDENTIALS)
        client.exchange_callback.side_effect = [original, BrokerError("still broken")]
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        with pytest.raises(BrokerError) as exc_info:
            await handler.exchange(session, code="abc")

        assert exc_info.value is original
        assert session.status == OAuthState.FAILED

    @pytest.mark.asyncio
    async def test_no_retry_when_credential_was_used(self, settings):
        client = _mock_client(credential_id="cred_1", connections=NOTION_CREDENTIALS)
        client.exchange_callback.side_effect = BrokerError("invalid_grant")
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        with pytest.raises(BrokerError):
            await handler.exchange(session, code="abc")

        client.exchange_callback.assert_awaited_once()
        client.list_connections.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_exchanges_run_once(self, settings):
        client = _mock_client()

        async def slow_exchange(*args, **kwargs):
            await asyncio.sleep(0.01)
            return ExchangeResult(connection_id="conn_9", credential_id="cred_1")

        client.exchange_callback.side_effect = slow_exchange
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        results = await asyncio.gather(
            handler.exchange(session, code="abc"),
            handler.exchange(session, code="abc"),
        )

        assert {r.connection_id for r in results} == {"conn_9"}
        client.exchange_callback.assert_awaited_once()


class TestResolveSession:
    @pytest.mark.asyncio
    async def test_by_state_then_pending_then_ad_hoc(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)
        session = await handler.initiate("notion")

        assert handler.resolve_session(CallbackParams(state="xyz")) is session
        assert handler.resolve_session(CallbackParams(state="unknown")) is session

        ad_hoc = handler.resolve_session(CallbackParams(code="abc", connector_id="slack"))
        assert ad_hoc is not session
        assert ad_hoc.connector_id == "slack"
        assert ad_hoc.status == OAuthState.INITIATED


class TestWaitForCompletion:
    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        handler = _handler(_mock_client(), settings)
        session = await handler.initiate("notion")

        with pytest.raises(TimeoutError) as exc_info:
            await handler.wait_for_completion(session, timeout=0.01)
        assert isinstance(exc_info.value, OAuthTimeoutError)
        assert session.status == OAuthState.FAILED

    @pytest.mark.asyncio
    async def test_returns_when_callback_arrives(self, settings):
        handler = _handler(_mock_client(), settings)
        session = await handler.initiate("notion")

        async def deliver():
            await asyncio.sleep(0.01)
            await handler.handle_callback(session, CallbackParams(code="abc", state="xyz"))

        task = asyncio.create_task(deliver())
        done = await handler.wait_for_completion(session, timeout=1)
        await task

        assert done.connection_id == "conn_9"

    @pytest.mark.asyncio
    async def test_failed_session_raises_its_error(self, settings):
        handler = _handler(_mock_client(), settings)
        session = await handler.initiate("notion")
        await handler.handle_callback(session, CallbackParams(error="access_denied"))

        with pytest.raises(OAuthProviderError):
            await handler.wait_for_completion(session, timeout=1)


class TestNotionScenario:
    @pytest.mark.asyncio
    async def test_initiate_callback_exchange(self, settings):
        client = _mock_client()
        handler = _handler(client, settings)

        session = await handler.initiate("notion")
        assert session.credential_id == "cred_1"

        params = CallbackParams.from_query({"code": "abc", "state": "xyz"})
        resolved = handler.resolve_session(params)
        outcome = await handler.handle_callback(resolved, params)

        assert resolved is session
        assert outcome.connection_id == "conn_9"
        _, kwargs = client.exchange_callback.await_args
        assert (kwargs["code"], kwargs["state"], kwargs["credential_id"]) == ("abc", "xyz", "cred_1")
