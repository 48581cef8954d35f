"""
Component lifecycle and health reporting.

Every long-lived part of the relay (listener, terminal, degraded-mode
generator, the app itself) is a BaseComponent: start/stop are idempotent and
health_check reports one of healthy / degraded / unhealthy.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Health status, ordered from best to worst by ``severity``."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def serves_traffic(self) -> bool:
        """Whether /health should answer 200 for this status."""
        return self in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNKNOWN: 2,
    HealthStatus.UNHEALTHY: 3,
}


@dataclass
class HealthCheckResult:
    """Result of one component's health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    @classmethod
    def worst(cls, results: Iterable["HealthCheckResult"]) -> Optional["HealthCheckResult"]:
        """The most severe result, first one wins on ties."""
        worst: Optional[HealthCheckResult] = None
        for result in results:
            if worst is None or result.status.severity > worst.status.severity:
                worst = result
        return worst

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


class BaseComponent:
    """Start/stop/health scaffolding shared by the relay's components.

    Subclasses override the ``_do_*`` hooks. ``start`` only marks the
    component running once ``_do_start`` returned, so a component whose
    startup raised (a listener that could not bind) stays stopped and a
    later ``stop`` is a no-op.

    Usage:
        class Ticker(BaseComponent):
            async def _do_start(self) -> None:
                self._task = asyncio.create_task(self._loop())

            async def _do_stop(self) -> None:
                self._task.cancel()
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (_utcnow() - self._started_at).total_seconds()

    async def start(self) -> None:
        if self._running:
            return
        await self._do_start()
        self._running = True
        self._started_at = _utcnow()

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self._do_stop()
        finally:
            self._running = False

    async def health_check(self) -> HealthCheckResult:
        if not self._running:
            return HealthCheckResult.unhealthy(f"{self._name} not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
