"""Fan-out dispatcher - pushes outbound events to every attached observer.

Each observer gets its own queue and sender task, so a slow or broken
observer never holds up the others and each observer sees events in the
order they were produced.

Cold-start replay happens inside ``attach``: the snapshot is read and queued
and the observer joins the broadcast set without any await in between. On a
single event loop nothing can be broadcast in that window, so every live
event after attach lands behind the replay, exactly once.
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import structlog

from bookrelay.core.errors import ObserverDeliveryFailure
from bookrelay.domain.events import OutboundEvent
from bookrelay.observers.base import Observer
from bookrelay.services.snapshot_store import SnapshotStore

if TYPE_CHECKING:
    from bookrelay.services.metrics import MetricsEmitter

log = structlog.get_logger()

DEFAULT_MAX_QUEUE_SIZE = 1000
DEFAULT_FLUSH_TIMEOUT_SECONDS = 1.0


@dataclass
class ObserverSlot:
    """Attachment state for one observer."""

    observer: Observer
    queue: "asyncio.Queue[dict[str, Any]]"
    replayed: int = 0
    pending_replay: int = 0
    delivered: int = 0
    task: Optional[asyncio.Task] = None

    @property
    def pending_live(self) -> int:
        """Queued live events; replay sits at the head of the queue and is excluded."""
        return self.queue.qsize() - self.pending_replay


class FanoutDispatcher:
    """Broadcasts outbound events to attached observers.

    Usage:
        dispatcher = FanoutDispatcher(store)
        dispatcher.attach(observer)      # replays the snapshot to it
        dispatcher.broadcast(event)      # never raises
        await dispatcher.detach(observer)
        await dispatcher.close_all()
    """

    def __init__(
        self,
        store: SnapshotStore,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        metrics: Optional["MetricsEmitter"] = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Snapshot store read for cold-start replay.
            max_queue_size: Pending live events allowed per observer before it
                is detached as a slow consumer. Replay does not count.
            metrics: Optional metrics emitter.
        """
        self._store = store
        self._max_queue_size = max_queue_size
        self._metrics = metrics
        self._slots: dict[int, ObserverSlot] = {}
        self._background: set[asyncio.Task] = set()
        self._closed = False
        self._log = log.bind(component="dispatcher")

    @property
    def observer_count(self) -> int:
        return len(self._slots)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def observers(self) -> list[Observer]:
        return [slot.observer for slot in self._slots.values()]

    def is_attached(self, observer: Observer) -> bool:
        return id(observer) in self._slots

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def attach(self, observer: Observer) -> ObserverSlot:
        """Attach an observer and queue the snapshot replay for it.

        Must be called from the event loop thread.

        Raises:
            RuntimeError: the dispatcher has been closed for shutdown.
        """
        if self._closed:
            raise RuntimeError("dispatcher is closed")

        existing = self._slots.get(id(observer))
        if existing is not None:
            return existing

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        replay = self._store.replay_events()
        for event in replay:
            queue.put_nowait(event.to_dict())

        slot = ObserverSlot(
            observer=observer,
            queue=queue,
            replayed=len(replay),
            pending_replay=len(replay),
        )
        self._slots[id(observer)] = slot
        slot.task = asyncio.create_task(self._deliver(slot), name=f"observer:{observer.name}")

        self._log.info(
            "observer_attached",
            observer=observer.name,
            replay_events=len(replay),
            observers=len(self._slots),
        )
        if self._metrics:
            self._metrics.set_observers(len(self._slots))
        return slot

    async def detach(self, observer: Observer, reason: str = "closed") -> bool:
        """Detach an observer, stop its sender and close it.

        Returns:
            True if the observer was attached.
        """
        slot = self._slots.get(id(observer))
        if slot is None:
            return False

        self._remove(slot, reason)
        await self._cancel_sender(slot)
        await self._close_observer(slot)
        return True

    async def close_all(self, flush_timeout: float = DEFAULT_FLUSH_TIMEOUT_SECONDS) -> None:
        """Stop broadcasting, give queues a moment to drain, then close everyone."""
        self._closed = True

        if self._slots:
            try:
                await asyncio.wait_for(self.flush(), timeout=flush_timeout)
            except asyncio.TimeoutError:
                self._log.warning("observer_flush_timeout", observers=len(self._slots))

        for slot in list(self._slots.values()):
            await self.detach(slot.observer, reason="shutdown")

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        self._log.info("observers_closed")

    async def flush(self) -> None:
        """Wait until every attached observer has consumed its queue."""
        slots = list(self._slots.values())
        if slots:
            await asyncio.gather(*(slot.queue.join() for slot in slots))

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def broadcast(self, event: OutboundEvent) -> int:
        """Queue an event for every attached observer.

        Never raises. An observer whose backlog is full is detached.

        Returns:
            Number of observers the event was queued for.
        """
        if self._closed:
            return 0

        queued = 0
        for slot in list(self._slots.values()):
            if slot.pending_live >= self._max_queue_size:
                self._log.warning(
                    "observer_queue_overflow",
                    observer=slot.observer.name,
                    pending=slot.pending_live,
                )
                self._detach_later(slot, reason="slow_consumer")
                continue
            # Each observer gets its own copy of the wire dict
            slot.queue.put_nowait(event.to_dict())
            queued += 1

        if self._metrics:
            self._metrics.record_broadcast(event.type)
        return queued

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _deliver(self, slot: ObserverSlot) -> None:
        """Sender loop for one observer."""
        observer = slot.observer
        while True:
            event = await slot.queue.get()
            if slot.pending_replay:
                slot.pending_replay -= 1
            try:
                await observer.send(event)
                slot.delivered += 1
            except Exception as e:
                failure = ObserverDeliveryFailure(observer.name, cause=e)
                self._log.warning(
                    "observer_delivery_failed",
                    observer=observer.name,
                    event_type=event.get("type"),
                    error=str(failure),
                )
                self._remove(slot, "delivery_failed")
                await self._close_observer(slot)
                return
            finally:
                slot.queue.task_done()

    def _remove(self, slot: ObserverSlot, reason: str) -> None:
        """Drop a slot from the broadcast set and discard its backlog."""
        if self._slots.get(id(slot.observer)) is not slot:
            return
        del self._slots[id(slot.observer)]

        dropped = 0
        while not slot.queue.empty():
            slot.queue.get_nowait()
            slot.queue.task_done()
            dropped += 1

        self._log.info(
            "observer_detached",
            observer=slot.observer.name,
            reason=reason,
            delivered=slot.delivered,
            dropped=dropped,
            observers=len(self._slots),
        )
        if self._metrics:
            self._metrics.record_detach(reason)
            self._metrics.set_observers(len(self._slots))

    def _detach_later(self, slot: ObserverSlot, reason: str) -> None:
        """Detach from synchronous code; closing happens in a background task."""
        self._remove(slot, reason)

        async def finish() -> None:
            await self._cancel_sender(slot)
            await self._close_observer(slot)

        task = asyncio.create_task(finish())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_sender(self, slot: ObserverSlot) -> None:
        task = slot.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _close_observer(self, slot: ObserverSlot) -> None:
        try:
            await slot.observer.close()
        except Exception as e:
            self._log.debug("observer_close_failed", observer=slot.observer.name, error=str(e))
