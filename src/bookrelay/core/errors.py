"""
Error taxonomy for the relay.

ConfigError stops the relay before it starts. None of the others are fatal
once the relay is running:

- TransportUnavailable: bus unreachable at startup, switches to degraded mode
- MalformedMessage: payload failed to parse or match its shape, message dropped
- ObserverDeliveryFailure: a send to one observer failed, that observer is detached

Unknown topics are not errors at all; they are dropped silently.
"""

from datetime import datetime, timezone
from typing import Optional


class RelayError(Exception):
    """Base exception for all bookrelay errors."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransportUnavailable(RelayError):
    """The upstream bus could not be reached."""

    def __init__(self, url: str, cause: Optional[Exception] = None):
        super().__init__(f"bus unavailable at {url}", cause)
        self.url = url


class MalformedMessage(RelayError):
    """A bus payload was not well-formed or did not match its expected shape."""

    def __init__(self, topic: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(f"malformed message on {topic}: {reason}", cause)
        self.topic = topic
        self.reason = reason


class ObserverDeliveryFailure(RelayError):
    """Delivering an event to an observer failed."""

    def __init__(self, observer: str, cause: Optional[Exception] = None):
        super().__init__(f"delivery to {observer} failed", cause)
        self.observer = observer


class ConfigError(RelayError):
    """Configuration values the relay cannot start with."""

    def __init__(self, problems: list[str]):
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = problems
