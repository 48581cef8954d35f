"""
Unit tests for ConfigManager.

Tests verify:
- TOML loading
- Environment variable overrides
- Runtime overrides
- Type-specific getters
- Config file discovery
- Validation
"""
import tempfile
from pathlib import Path

import pytest

from bookrelay.core.config import ConfigManager, find_config_file
from bookrelay.core.errors import ConfigError


TOML = """
[bookrelay]
log_level = "DEBUG"
log_json = true

[redis]
url = "redis://10.0.0.5:6380"

[server]
port = 9000

[degraded]
orderbook_tick_probability = 0.5
"""


@pytest.fixture
def config_path():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(TOML)
        f.flush()
        path = Path(f.name)
    yield path
    path.unlink()


class TestConfigBasics:
    """Tests for basic ConfigManager functionality."""

    def test_empty_config(self):
        config = ConfigManager()
        assert config.get("any.key") is None
        assert config.get("any.key", "default") == "default"
        assert config.config_path is None

    def test_load_toml_file(self, config_path):
        config = ConfigManager(config_path)
        assert config.get("bookrelay.log_level") == "DEBUG"
        assert config.get("redis.url") == "redis://10.0.0.5:6380"
        assert config.get_int("server.port") == 9000
        assert config.get_bool("bookrelay.log_json") is True

    def test_missing_file_is_ignored(self, tmp_path):
        config = ConfigManager(tmp_path / "absent.toml")
        assert config.file_data == {}
        assert config.get("redis.url") == "redis://localhost:6379"

    def test_get_section(self, config_path):
        config = ConfigManager(config_path)
        server = config.get_section("server")
        assert server["port"] == 9000
        assert server["max_queue_size"] == 1000
        assert config.get_section("nope") == {}


class TestOverrides:
    """Environment and runtime overrides."""

    def test_env_overrides_toml(self, config_path, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_SERVER_PORT", "9100")
        config = ConfigManager(config_path)
        assert config.get_int("server.port") == 9100

    def test_env_string_with_dots_stays_string(self, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_REDIS_URL", "redis://redis.internal:6379")
        config = ConfigManager()
        assert config.get("redis.url") == "redis://redis.internal:6379"

    def test_env_numeric_flag_is_not_bool(self, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_SERVER_MAX_QUEUE_SIZE", "1")
        config = ConfigManager()
        assert config.get("server.max_queue_size") == 1

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_DEGRADED_ENABLED", "off")
        config = ConfigManager()
        assert config.get_bool("degraded.enabled", True) is False

    def test_runtime_override_wins(self, config_path, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_BOOKRELAY_LOG_LEVEL", "WARNING")
        config = ConfigManager(config_path)
        config.set("bookrelay.log_level", "ERROR")
        assert config.get("bookrelay.log_level") == "ERROR"


class TestTypedGetters:

    def test_defaults(self):
        config = ConfigManager()
        assert config.get_int("server.port", 8080) == 8080
        assert config.get_float("bus.connect_timeout_seconds", 5.0) == 5.0
        assert config.get_bool("terminal.enabled") is False

    def test_float(self, config_path):
        config = ConfigManager(config_path)
        assert config.get_float("degraded.orderbook_tick_probability") == 0.5

    def test_builtin_defaults(self):
        config = ConfigManager()
        assert config.get_int("server.port") == 8080
        assert config.get_bool("degraded.enabled") is True
        assert config.get("bus.orderbook_channel") == "orderbooks"

    def test_list_from_env(self, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_BUS_EXTRA", "a, b,c")
        config = ConfigManager()
        assert config.get("bus.extra") == ["a", "b", "c"]


class TestFindConfigFile:

    def test_explicit_path_preferred(self, config_path):
        assert find_config_file(config_path) == config_path

    def test_search_paths(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None

        (tmp_path / "bookrelay.toml").write_text("[redis]\nurl = 'redis://x'\n")
        assert find_config_file() == Path("bookrelay.toml")

        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "default.toml").write_text("")
        assert find_config_file() == Path("config/default.toml")

    def test_missing_explicit_path_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file(tmp_path / "nope.toml") is None


class TestValidate:

    def test_defaults_are_valid(self):
        ConfigManager().validate()

    def test_port_zero_allowed(self):
        config = ConfigManager()
        config.set("server.port", 0)
        config.validate()

    def test_collects_every_problem(self):
        config = ConfigManager()
        config.set("server.port", 70000)
        config.set("degraded.orderbook_tick_probability", 1.5)
        config.set("shutdown.timeout_seconds", 0)
        config.set("redis.url", "localhost:6379")

        with pytest.raises(ConfigError) as exc_info:
            config.validate()

        problems = exc_info.value.problems
        assert len(problems) == 4
        assert any("server.port" in p for p in problems)
        assert any("orderbook_tick_probability" in p for p in problems)
        assert any("shutdown.timeout_seconds" in p for p in problems)
        assert any("redis.url" in p for p in problems)

    def test_non_numeric_value(self, monkeypatch):
        monkeypatch.setenv("BOOKRELAY_SERVER_MAX_QUEUE_SIZE", "lots")
        with pytest.raises(ConfigError, match="server.max_queue_size must be a number"):
            ConfigManager().validate()

    def test_probability_bounds_inclusive(self):
        config = ConfigManager()
        config.set("degraded.orderbook_tick_probability", 1.0)
        config.validate()
