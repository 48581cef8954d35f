"""Unit tests for the command-line entry point."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from bookrelay import __version__
from bookrelay.__main__ import check_health, load_config, main, parse_args


class TestParseArgs:

    def test_defaults(self):
        args = parse_args([])
        assert args.command is None
        assert args.config is None
        assert args.log_level is None

    def test_monitor_with_options(self):
        args = parse_args(["--config", "relay.toml", "--log-level", "DEBUG", "monitor"])
        assert args.command == "monitor"
        assert args.config == Path("relay.toml")
        assert args.log_level == "DEBUG"

    def test_health_url(self):
        args = parse_args(["health", "--url", "http://relay:8080/health"])
        assert args.url == "http://relay:8080/health"

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestMain:

    def test_version_command(self, capsys):
        assert main(["version"]) == 0
        assert capsys.readouterr().out.strip() == f"bookrelay {__version__}"

    def test_log_level_override(self, tmp_path):
        args = parse_args(["--config", str(tmp_path / "missing.toml"), "--log-level", "ERROR"])
        config = load_config(args)
        assert config.get("bookrelay.log_level") == "ERROR"


class TestCheckHealth:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        return client

    async def test_healthy(self, client, capsys):
        response = MagicMock(status_code=200)
        response.json.return_value = {
            "status": "degraded",
            "bus_connected": False,
            "degraded_mode": True,
            "observers": 2,
            "uptime_seconds": 12.0,
            "entities": {"health": 3},
        }
        client.get = AsyncMock(return_value=response)

        with patch("httpx.AsyncClient", return_value=client):
            code = await check_health(parse_args(["health", "--url", "http://x/health"]))

        assert code == 0
        out = capsys.readouterr().out
        assert "Status: degraded" in out
        assert "Degraded mode: True" in out

    async def test_unhealthy_exit_code(self, client):
        response = MagicMock(status_code=503)
        response.json.return_value = {"status": "unhealthy"}
        client.get = AsyncMock(return_value=response)

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_health(parse_args(["health", "--url", "http://x/health"])) == 1

    async def test_connection_refused(self, client, capsys):
        client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch("httpx.AsyncClient", return_value=client):
            assert await check_health(parse_args(["health", "--url", "http://x/health"])) == 1
        assert "Cannot connect" in capsys.readouterr().out


class TestInvalidConfig:

    def test_exits_with_config_error(self, tmp_path, capsys):
        path = tmp_path / "relay.toml"
        path.write_text("[server]\nport = 70000\n")

        assert main(["--config", str(path), "monitor"]) == 2
        assert "server.port out of range" in capsys.readouterr().err
