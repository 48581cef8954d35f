"""
Relay configuration: TOML file, BOOKRELAY_* environment variables and
runtime overrides layered over the built-in DEFAULTS.

Lookup order (first hit wins):
1. Runtime overrides (command-line flags)
2. Environment variables, "server.port" -> BOOKRELAY_SERVER_PORT
3. TOML file
4. DEFAULTS below
"""
import os
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

from bookrelay.core.errors import ConfigError


DEFAULT_SEARCH_PATHS = (
    Path("config/default.toml"),
    Path("bookrelay.toml"),
    Path("/etc/bookrelay/bookrelay.toml"),
)

# Mirrors config/default.toml so the relay runs with no file at all.
DEFAULTS: dict[str, dict[str, Any]] = {
    "bookrelay": {"log_level": "INFO", "log_json": False},
    "redis": {"url": "redis://localhost:6379"},
    "bus": {
        "connect_timeout_seconds": 5.0,
        "health_prefix": "metrics:",
        "status_prefix": "market_status:",
        "orderbook_channel": "orderbooks",
        "discovery_channel": "market_discovery",
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "static_dir": "static",
        "max_queue_size": 1000,
    },
    "terminal": {
        "enabled": False,
        "summary_interval_seconds": 3.0,
        "master_hint": "127.124",
        "stale_after_seconds": 60.0,
    },
    "degraded": {
        "enabled": True,
        "interval_seconds": 5.0,
        "orderbook_tick_probability": 0.3,
    },
    "shutdown": {"timeout_seconds": 10.0},
}

_POSITIVE_FLOATS = (
    "bus.connect_timeout_seconds",
    "terminal.summary_interval_seconds",
    "terminal.stale_after_seconds",
    "degraded.interval_seconds",
    "shutdown.timeout_seconds",
)


def find_config_file(specified: Optional[Path] = None) -> Optional[Path]:
    """Return the first existing config file, preferring an explicit path."""
    if specified and specified.exists():
        return specified

    for path in DEFAULT_SEARCH_PATHS:
        if path.exists():
            return path

    return None


def _lookup(data: dict[str, Any], key: str) -> tuple[bool, Any]:
    current: Any = data
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _parse_env_value(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False

    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        pass

    if "," in value:
        return [v.strip() for v in value.split(",")]
    return value


class ConfigManager:
    """Dot-notation access to the layered relay configuration.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        config.set("bookrelay.log_level", "DEBUG")
        config.validate()
        port = config.get_int("server.port")
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "BOOKRELAY_",
    ) -> None:
        self._file_data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            with open(config_path, "rb") as f:
                self._file_data = tomllib.load(f)

    @property
    def config_path(self) -> Optional[Path]:
        """Path of the TOML file, if one was given."""
        return self._config_path

    @property
    def file_data(self) -> dict[str, Any]:
        """Values read from the TOML file, without defaults."""
        return self._file_data.copy()

    def env_key(self, key: str) -> str:
        return self._env_prefix + key.upper().replace(".", "_")

    def set(self, key: str, value: Any) -> None:
        """Set a runtime override; wins over environment and file."""
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve ``key`` through overrides, environment, file and DEFAULTS.

        ``default`` is returned only when no layer knows the key.
        """
        if key in self._overrides:
            return self._overrides[key]

        env_key = self.env_key(key)
        if env_key in os.environ:
            return _parse_env_value(os.environ[env_key])

        for layer in (self._file_data, DEFAULTS):
            found, value = _lookup(layer, key)
            if found:
                return value

        return default

    def get_section(self, section: str) -> dict[str, Any]:
        """Defaults for ``section`` with the file's values merged on top."""
        merged: dict[str, Any] = {}
        for layer in (DEFAULTS, self._file_data):
            found, value = _lookup(layer, section)
            if found and isinstance(value, dict):
                merged.update(value)
        return merged

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        return default if value is None else int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        return default if value is None else float(value)

    def validate(self) -> None:
        """Check the values the relay cannot start without.

        Raises:
            ConfigError: listing every problem found.
        """
        problems: list[str] = []

        def number(key: str, cast: type) -> Optional[float]:
            try:
                return cast(self.get(key))
            except (TypeError, ValueError):
                problems.append(f"{key} must be a number, got {self.get(key)!r}")
                return None

        port = number("server.port", int)
        if port is not None and not 0 <= port <= 65535:
            problems.append(f"server.port out of range: {port}")

        queue = number("server.max_queue_size", int)
        if queue is not None and queue < 1:
            problems.append(f"server.max_queue_size must be at least 1, got {queue}")

        probability = number("degraded.orderbook_tick_probability", float)
        if probability is not None and not 0.0 <= probability <= 1.0:
            problems.append(
                f"degraded.orderbook_tick_probability must be within [0, 1], got {probability}"
            )

        for key in _POSITIVE_FLOATS:
            value = number(key, float)
            if value is not None and value <= 0:
                problems.append(f"{key} must be positive, got {value}")

        if not str(self.get("redis.url", "")).startswith(("redis://", "rediss://", "unix://")):
            problems.append(f"redis.url is not a redis URL: {self.get('redis.url')!r}")

        if problems:
            raise ConfigError(problems)
