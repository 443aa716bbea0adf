"""
Tests for the command-line entry point.
"""

import argparse

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import cli
from config import log_setup
from connectors.errors import AuthorizationError, ConfigurationError
from connectors.models import Credential


def _fake_alloy(connections=()):
    alloy = MagicMock()
    alloy.__aenter__.return_value = alloy
    alloy.__aexit__.return_value = False
    alloy.list_connections = AsyncMock(return_value=[Credential.from_api(c) for c in connections])
    alloy.execute_action = AsyncMock(return_value={"results": [{"id": "p1"}]})
    return alloy


class TestParser:
    def test_connect_defaults(self):
        args = cli.build_parser().parse_args(["connect"])
        assert args.connector == "notion"
        assert args.no_browser is False
        assert args.write_env is False

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    def test_logging_setup_does_not_come_from_the_web_app(self):
        assert cli.configure_logging is log_setup.configure_logging

    def test_missing_config_exits_2(self, capsys):
        error = ConfigurationError("ALLOY_API_KEY environment variable is required", variable="ALLOY_API_KEY")
        with patch.object(cli, "load_config", side_effect=error):
            assert cli.main(["list"]) == 2
        assert "ALLOY_API_KEY" in capsys.readouterr().err

    def test_broker_error_exits_1(self, settings, capsys):
        alloy = _fake_alloy()
        alloy.list_connections.side_effect = AuthorizationError("bad key")
        with patch.object(cli, "load_config", return_value=settings), \
                patch.object(cli, "configure_logging"), \
                patch.object(cli, "AlloyClient", return_value=alloy):
            assert cli.main(["list"]) == 1
        assert "bad key" in capsys.readouterr().err


class TestCommands:
    @pytest.mark.asyncio
    async def test_list_filters_by_connector(self, settings, capsys):
        alloy = _fake_alloy(
            [
                {"credentialId": "cred_n", "connectorId": "notion"},
                {"credentialId": "cred_s", "connectorId": "slack"},
            ]
        )
        with patch.object(cli, "AlloyClient", return_value=alloy):
            code = await cli._list(settings, argparse.Namespace(connector="notion"))

        out = capsys.readouterr().out
        assert code == 0
        assert "cred_n" in out
        assert "cred_s" not in out

    @pytest.mark.asyncio
    async def test_verify_writes_first_working_connection(self, settings, tmp_path):
        env = tmp_path / ".env"
        settings = settings.model_copy(update={"env_file_path": str(env)})
        alloy = _fake_alloy(
            [
                {"credentialId": "cred_old", "connectorId": "notion", "createdAt": "2024-01-01T00:00:00Z"},
                {"credentialId": "cred_new", "connectorId": "notion", "createdAt": "2024-06-01T00:00:00Z"},
            ]
        )
        with patch.object(cli, "AlloyClient", return_value=alloy):
            code = await cli._verify(settings, argparse.Namespace(limit=10, write_env=True))

        assert code == 0
        assert "CONNECTION_ID=cred_new" in env.read_text()
