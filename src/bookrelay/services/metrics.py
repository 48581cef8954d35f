"""
Prometheus metrics emission for bookrelay.

All metrics use the 'bookrelay_' prefix and live in a private registry so
tests can create as many emitters as they like.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Info,
    generate_latest,
)

from bookrelay import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_message("health")
        emitter.record_broadcast("health_update")
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a fresh one if not provided)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "bookrelay",
            "bookrelay build information",
            registry=self._registry,
        )
        self._info.info({"version": __version__})

        self._uptime = Gauge(
            "bookrelay_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Intake
        self._messages_total = Counter(
            "bookrelay_messages_total",
            "Bus messages applied to the snapshot store",
            ["kind"],
            registry=self._registry,
        )

        self._malformed_total = Counter(
            "bookrelay_malformed_messages_total",
            "Bus messages dropped because the payload was malformed",
            ["family"],
            registry=self._registry,
        )

        self._unrecognized_total = Counter(
            "bookrelay_unrecognized_messages_total",
            "Bus messages on topics the relay does not handle",
            registry=self._registry,
        )

        # Fan-out
        self._broadcasts_total = Counter(
            "bookrelay_broadcasts_total",
            "Events broadcast to observers",
            ["event_type"],
            registry=self._registry,
        )

        self._observers = Gauge(
            "bookrelay_observers",
            "Currently attached observers",
            registry=self._registry,
        )

        self._detaches_total = Counter(
            "bookrelay_observer_detaches_total",
            "Observers detached",
            ["reason"],
            registry=self._registry,
        )

        # State
        self._entities = Gauge(
            "bookrelay_entities",
            "Records held in the snapshot store",
            ["namespace"],
            registry=self._registry,
        )

        self._degraded = Gauge(
            "bookrelay_degraded_mode",
            "1 when running on synthesized data because the bus is unreachable",
            registry=self._registry,
        )

        self._bus_connected = Gauge(
            "bookrelay_bus_connected",
            "Bus connection status (1=connected, 0=disconnected)",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_message(self, kind: str) -> None:
        self._messages_total.labels(kind=kind).inc()

    def record_malformed(self, family: str) -> None:
        self._malformed_total.labels(family=family).inc()

    def record_unrecognized(self) -> None:
        self._unrecognized_total.inc()

    def record_broadcast(self, event_type: str) -> None:
        self._broadcasts_total.labels(event_type=event_type).inc()

    def set_observers(self, count: int) -> None:
        self._observers.set(count)

    def record_detach(self, reason: str) -> None:
        self._detaches_total.labels(reason=reason).inc()

    def set_entities(self, health: int, orderbooks: int, statuses: int) -> None:
        self._entities.labels(namespace="health").set(health)
        self._entities.labels(namespace="orderbooks").set(orderbooks)
        self._entities.labels(namespace="status").set(statuses)

    def set_degraded(self, degraded: bool) -> None:
        self._degraded.set(1 if degraded else 0)

    def set_bus_connected(self, connected: bool) -> None:
        self._bus_connected.set(1 if connected else 0)

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus text format."""
        return generate_latest(self._registry)
