"""Core framework infrastructure - config, bus, errors, logging, lifecycle, shutdown."""

from bookrelay.core.bus import BusSubscriber
from bookrelay.core.config import ConfigManager
from bookrelay.core.errors import (
    ConfigError,
    MalformedMessage,
    ObserverDeliveryFailure,
    RelayError,
    TransportUnavailable,
)
from bookrelay.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from bookrelay.core.logging import get_logger, setup_logging, setup_logging_from_config
from bookrelay.core.shutdown import ShutdownManager

__all__ = [
    # Config
    "ConfigManager",
    # Bus
    "BusSubscriber",
    # Errors
    "RelayError",
    "ConfigError",
    "TransportUnavailable",
    "MalformedMessage",
    "ObserverDeliveryFailure",
    # Logging
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Shutdown
    "ShutdownManager",
]
