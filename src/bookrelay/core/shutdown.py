"""
Graceful shutdown for the relay.

SIGTERM/SIGINT (or a programmatic request) runs three phases, in order:

1. stopping_intake: no more bus messages, degraded generator stopped
2. closing_observers: every observer connection closed, listener stopped
3. releasing_bus: the bus connection dropped

Each callback gets its own timeout. A failing or hung callback is recorded
and the next one still runs, so the bus is always released last.
"""

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

from bookrelay.core.logging import get_logger

ShutdownCallback = Callable[[], Coroutine[Any, Any, None]]

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownPhase(str, Enum):
    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    STOPPING_INTAKE = "stopping_intake"
    CLOSING_OBSERVERS = "closing_observers"
    RELEASING_BUS = "releasing_bus"
    COMPLETED = "completed"


ORDERED_PHASES = (
    ShutdownPhase.STOPPING_INTAKE,
    ShutdownPhase.CLOSING_OBSERVERS,
    ShutdownPhase.RELEASING_BUS,
)


@dataclass
class PhaseResult:
    """Outcome of one finished phase."""

    phase: ShutdownPhase
    callbacks: int
    failures: int
    duration_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "callbacks": self.callbacks,
            "failures": self.failures,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ShutdownProgress:
    """Where the shutdown sequence is, reported on /health while it runs."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signal_received: Optional[str] = None
    phases: list[PhaseResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def finished(self, phase: ShutdownPhase) -> bool:
        return any(result.phase == phase for result in self.phases)

    @property
    def intake_stopped(self) -> bool:
        return self.finished(ShutdownPhase.STOPPING_INTAKE)

    @property
    def observers_closed(self) -> bool:
        return self.finished(ShutdownPhase.CLOSING_OBSERVERS)

    @property
    def bus_released(self) -> bool:
        return self.finished(ShutdownPhase.RELEASING_BUS)

    @property
    def is_shutting_down(self) -> bool:
        return self.phase not in (ShutdownPhase.RUNNING, ShutdownPhase.COMPLETED)

    @property
    def is_completed(self) -> bool:
        return self.phase == ShutdownPhase.COMPLETED

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "signal_received": self.signal_received,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "phases": [result.to_dict() for result in self.phases],
            "errors": self.errors,
        }


def _callback_name(callback: ShutdownCallback, index: int) -> str:
    return getattr(callback, "__name__", None) or f"callback_{index}"


class ShutdownManager:
    """Runs the shutdown phases once, on a signal or on request.

    Usage:
        manager = ShutdownManager(timeout_seconds=10.0)
        manager.on_stop_intake(bus.stop_listening)
        manager.on_close_observers(dispatcher.close_all)
        manager.on_release_bus(bus.disconnect)
        manager.install_signal_handlers()

        await manager.wait_for_shutdown()
    """

    DEFAULT_TIMEOUT_SECONDS = 10.0

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout_seconds
        self._progress = ShutdownProgress()
        self._shutdown_event = asyncio.Event()
        self._callbacks: dict[ShutdownPhase, list[ShutdownCallback]] = {
            phase: [] for phase in ORDERED_PHASES
        }
        self._signal_task: Optional[asyncio.Task] = None
        self._log = get_logger("shutdown")

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    @property
    def is_shutting_down(self) -> bool:
        return self._progress.is_shutting_down

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def register(self, phase: ShutdownPhase, callback: ShutdownCallback) -> None:
        """Add ``callback`` to ``phase``; callbacks in a phase run in registration order."""
        if phase not in self._callbacks:
            raise ValueError(f"not a shutdown phase: {phase.value}")
        self._callbacks[phase].append(callback)

    def on_stop_intake(self, callback: ShutdownCallback) -> None:
        self.register(ShutdownPhase.STOPPING_INTAKE, callback)

    def on_close_observers(self, callback: ShutdownCallback) -> None:
        self.register(ShutdownPhase.CLOSING_OBSERVERS, callback)

    def on_release_bus(self, callback: ShutdownCallback) -> None:
        self.register(ShutdownPhase.RELEASING_BUS, callback)

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route SIGTERM and SIGINT into ``shutdown``. Needs a running loop."""
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._log.warning("no_event_loop_for_signal_handlers")
                return

        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)

        self._log.info("signal_handlers_installed", signals=[s.name for s in HANDLED_SIGNALS])

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return

        for sig in HANDLED_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                self._log.debug("signal_handler_not_removed", signal=sig.name)

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._signal_task is not None:
            self._log.info("shutdown_signal_repeated", signal=sig.name)
            return
        self._signal_task = asyncio.get_running_loop().create_task(self._handle_signal(sig))

    async def _handle_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        self._progress.signal_received = sig.name
        await self.shutdown()

    async def shutdown(self) -> None:
        """Run every phase once. Later calls return immediately."""
        if self._progress.is_shutting_down or self._progress.is_completed:
            self._log.debug("shutdown_already_requested", phase=self._progress.phase.value)
            return

        self._progress.started_at = datetime.now(timezone.utc)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._log.info("graceful_shutdown_starting", timeout_seconds=self._timeout)

        try:
            for phase in ORDERED_PHASES:
                await self._run_phase(phase)
        finally:
            self._progress.phase = ShutdownPhase.COMPLETED
            self._progress.completed_at = datetime.now(timezone.utc)
            self._shutdown_event.set()
            self._log.info(
                "graceful_shutdown_completed",
                duration_seconds=self._progress.duration_seconds,
                errors=len(self._progress.errors),
            )

    async def _run_phase(self, phase: ShutdownPhase) -> None:
        callbacks = self._callbacks[phase]
        self._progress.phase = phase
        self._log.info("shutdown_phase_starting", phase=phase.value, callbacks=len(callbacks))

        started = time.monotonic()
        failures = 0
        for index, callback in enumerate(callbacks):
            error = await self._run_callback(phase, _callback_name(callback, index), callback)
            if error is not None:
                failures += 1
                self._progress.errors.append(error)

        result = PhaseResult(phase, len(callbacks), failures, time.monotonic() - started)
        self._progress.phases.append(result)
        self._log.info("shutdown_phase_completed", **result.to_dict())

    async def _run_callback(
        self, phase: ShutdownPhase, name: str, callback: ShutdownCallback
    ) -> Optional[str]:
        """Await one callback; return an error line instead of raising."""
        try:
            await asyncio.wait_for(callback(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._log.warning("shutdown_callback_timeout", phase=phase.value, callback=name)
            return f"Timeout: {name}"
        except Exception as e:
            self._log.warning(
                "shutdown_callback_error", phase=phase.value, callback=name, error=str(e)
            )
            return f"Error in {name}: {e}"
        self._log.debug("shutdown_callback_completed", phase=phase.value, callback=name)
        return None

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def trigger_shutdown(self) -> None:
        """Schedule ``shutdown`` from synchronous code running on the loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.warning("no_event_loop_for_shutdown_trigger")
            return
        loop.create_task(self.shutdown())
