"""
bookrelay application lifecycle and component wiring.

Startup order:
1. Bind the HTTP/WebSocket listener (failure here is fatal)
2. Start the terminal observer, if enabled
3. Connect to Redis and start relaying, or fall back to degraded mode

Shutdown order (ShutdownManager phases):
1. stop_intake      - bus listener and degraded generator stop mutating
2. close_observers  - dispatcher drains and closes, terminal and listener stop
3. release_bus      - Redis unsubscribe and close
"""
import asyncio
import random
from pathlib import Path
from typing import Any, Optional, TextIO

from bookrelay import __version__
from bookrelay.core.bus import BusSubscriber
from bookrelay.core.config import ConfigManager, find_config_file
from bookrelay.core.errors import TransportUnavailable
from bookrelay.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from bookrelay.core.logging import get_logger
from bookrelay.core.shutdown import ShutdownManager, ShutdownProgress
from bookrelay.observers.terminal import TerminalObserver
from bookrelay.observers.websocket import RelayServer
from bookrelay.services.degraded import DegradedModeGenerator
from bookrelay.services.dispatcher import FanoutDispatcher
from bookrelay.services.metrics import MetricsEmitter
from bookrelay.services.relay import Relay
from bookrelay.services.router import TopicRouter
from bookrelay.services.snapshot_store import SnapshotStore


class RelayApp(BaseComponent):
    """Main bookrelay application.

    Usage:
        app = RelayApp(ConfigManager(Path("config/default.toml")))
        await app.run_forever()   # until SIGTERM/SIGINT
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        serve: bool = True,
        terminal: Optional[bool] = None,
        stream: Optional[TextIO] = None,
        bus: Optional[BusSubscriber] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Configuration (searched for on disk if not provided).
            serve: Run the HTTP/WebSocket listener.
            terminal: Attach the terminal observer (defaults to terminal.enabled).
            stream: Output stream for the terminal observer.
            bus: Pre-built bus subscriber (tests).
            rng: Random source for degraded mode (tests).
        """
        super().__init__(name="RelayApp")

        self._config = config or ConfigManager(find_config_file())
        self._log = get_logger("app")

        self._metrics = MetricsEmitter()
        self._store = SnapshotStore()
        self._router = TopicRouter(
            health_prefix=self._config.get("bus.health_prefix", "metrics:"),
            status_prefix=self._config.get("bus.status_prefix", "market_status:"),
            orderbook_channel=self._config.get("bus.orderbook_channel", "orderbooks"),
            discovery_channel=self._config.get("bus.discovery_channel", "market_discovery"),
        )
        self._dispatcher = FanoutDispatcher(
            self._store,
            max_queue_size=self._config.get_int("server.max_queue_size", 1000),
            metrics=self._metrics,
        )
        self._relay = Relay(
            self._store,
            self._dispatcher,
            router=self._router,
            metrics=self._metrics,
        )

        self._bus = bus or BusSubscriber(
            redis_url=self._config.get("redis.url", "redis://localhost:6379"),
            patterns=self._router.patterns,
            channels=self._router.channels,
            connect_timeout=self._config.get_float("bus.connect_timeout_seconds", 5.0),
        )

        self._degraded_enabled = self._config.get_bool("degraded.enabled", True)
        self._generator = DegradedModeGenerator(
            self._relay,
            interval_seconds=self._config.get_float("degraded.interval_seconds", 5.0),
            orderbook_tick_probability=self._config.get_float(
                "degraded.orderbook_tick_probability", 0.3
            ),
            rng=rng,
        )
        self._degraded = False

        self._server: Optional[RelayServer] = None
        if serve:
            static_dir = self._config.get("server.static_dir", "static")
            self._server = RelayServer(
                self._dispatcher,
                port=self._config.get_int("server.port", 8080),
                host=self._config.get("server.host", "0.0.0.0"),
                static_dir=Path(static_dir) if static_dir else None,
                health_provider=self.get_health,
                metrics_provider=self._metrics.get_metrics,
            )

        if terminal is None:
            terminal = self._config.get_bool("terminal.enabled", False)
        self._terminal: Optional[TerminalObserver] = None
        if terminal:
            self._terminal = TerminalObserver(
                self._store,
                stream=stream,
                summary_interval=self._config.get_float("terminal.summary_interval_seconds", 3.0),
                master_hint=str(self._config.get("terminal.master_hint", "127.124")),
                stale_after=self._config.get_float("terminal.stale_after_seconds", 60.0),
            )

        self._shutdown_manager = ShutdownManager(
            timeout_seconds=self._config.get_float("shutdown.timeout_seconds", 10.0),
        )
        self._configure_shutdown_manager()

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def dispatcher(self) -> FanoutDispatcher:
        return self._dispatcher

    @property
    def relay(self) -> Relay:
        return self._relay

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def server(self) -> Optional[RelayServer]:
        return self._server

    @property
    def generator(self) -> DegradedModeGenerator:
        return self._generator

    @property
    def is_degraded(self) -> bool:
        """True while serving synthesized data because the bus was unreachable."""
        return self._degraded

    @property
    def shutdown_manager(self) -> ShutdownManager:
        return self._shutdown_manager

    @property
    def shutdown_progress(self) -> ShutdownProgress:
        return self._shutdown_manager.progress

    async def _do_start(self) -> None:
        self._log.info(
            "starting_bookrelay",
            version=__version__,
            serve=self._server is not None,
            terminal=self._terminal is not None,
        )

        # Bind errors propagate: nothing else has started yet
        if self._server:
            await self._server.start()

        if self._terminal:
            await self._terminal.start()
            self._dispatcher.attach(self._terminal)

        await self._connect_bus()

        self._shutdown_manager.install_signal_handlers()

        self._log.info(
            "bookrelay_started",
            degraded=self._degraded,
            port=self._server.port if self._server else None,
        )

    async def _connect_bus(self) -> None:
        try:
            await self._bus.connect()
            await self._bus.start(self._relay.handle_message)
        except TransportUnavailable as e:
            self._metrics.set_bus_connected(False)
            self._log.warning("bus_unavailable", error=str(e))
            if not self._degraded_enabled:
                self._log.warning("degraded_mode_disabled", message="Running without data")
                return
            await self._generator.start()
            self._degraded = True
            self._metrics.set_degraded(True)
            return

        self._metrics.set_bus_connected(True)
        self._metrics.set_degraded(False)

    def _configure_shutdown_manager(self) -> None:
        # Phase 1: no more mutations or broadcasts
        self._shutdown_manager.on_stop_intake(self._stop_intake)

        # Phase 2: observers
        self._shutdown_manager.on_close_observers(self._dispatcher.close_all)
        if self._terminal:
            self._shutdown_manager.on_close_observers(self._terminal.stop)
        if self._server:
            self._shutdown_manager.on_close_observers(self._server.stop)

        # Phase 3: bus connection
        self._shutdown_manager.on_release_bus(self._release_bus)

    async def _stop_intake(self) -> None:
        if self._bus.is_listening:
            await self._bus.stop_listening()
        await self._generator.stop()

    async def _release_bus(self) -> None:
        if self._bus.is_connected:
            await self._bus.disconnect()
            self._metrics.set_bus_connected(False)

    async def _do_stop(self) -> None:
        self._log.info("stopping_bookrelay")

        if not self._shutdown_manager.progress.is_shutting_down:
            await self._shutdown_manager.shutdown()
        else:
            await self._shutdown_manager.wait_for_shutdown()

        self._shutdown_manager.remove_signal_handlers()

        self._log.info(
            "bookrelay_stopped",
            relay=self._relay.stats(),
            shutdown_progress=self._shutdown_manager.progress.to_dict(),
        )

    async def _component_health(self) -> dict[str, HealthCheckResult]:
        components: list[BaseComponent] = []
        if self._server:
            components.append(self._server)
        if self._terminal:
            components.append(self._terminal)
        if self._degraded:
            components.append(self._generator)
        return {component.name: await component.health_check() for component in components}

    async def _do_health_check(self) -> HealthCheckResult:
        details = {
            "uptime_seconds": self.uptime_seconds,
            "observers": self._dispatcher.observer_count,
        }

        if self._shutdown_manager.is_shutting_down:
            return HealthCheckResult.degraded(
                message=f"Shutting down: {self._shutdown_manager.progress.phase.value}",
                shutdown_phase=self._shutdown_manager.progress.phase.value,
                **details,
            )

        failing = HealthCheckResult.worst(
            result
            for result in (await self._component_health()).values()
            if result.status == HealthStatus.UNHEALTHY
        )
        if failing is not None:
            return HealthCheckResult.unhealthy(failing.message, **details)

        if self._degraded:
            return HealthCheckResult.degraded("Bus unavailable, serving synthesized data", **details)

        if not self._bus.is_listening:
            return HealthCheckResult.unhealthy("Bus unavailable", **details)

        return HealthCheckResult.healthy(**details)

    async def run_forever(self) -> None:
        """Run until a shutdown signal arrives, then shut down gracefully."""
        await self.start()

        try:
            while not self._shutdown_manager.shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(
                        self._shutdown_manager.shutdown_event.wait(),
                        timeout=1.0,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def get_health(self) -> dict[str, Any]:
        """Health status as served on /health."""
        result = await self.health_check()
        health_dict: dict[str, Any] = {
            "status": result.status.value,
            "message": result.message,
            "version": __version__,
            "bus_connected": self._bus.is_connected,
            "degraded_mode": self._degraded,
            "observers": self._dispatcher.observer_count,
            "entities": {
                "health": self._store.health_count,
                "orderbooks": self._store.orderbook_count,
                "statuses": self._store.status_count,
                "total_markets": self._store.total_markets,
            },
            "uptime_seconds": self.uptime_seconds,
            "checked_at": result.checked_at.isoformat(),
        }
        health_dict["components"] = {
            name: component.to_dict()
            for name, component in (await self._component_health()).items()
        }

        if self._shutdown_manager.is_shutting_down:
            health_dict["shutting_down"] = True
            health_dict["shutdown_progress"] = self._shutdown_manager.progress.to_dict()

        return health_dict

    async def request_shutdown(self) -> None:
        """Programmatically request graceful shutdown."""
        self._log.info("shutdown_requested_programmatically")
        await self._shutdown_manager.shutdown()
