"""Relay - the aggregation loop.

bus message -> TopicRouter -> Reconciler / SnapshotStore -> FanoutDispatcher

The relay is the only writer of the snapshot store. Live bus messages come
in through ``handle_message``; the degraded-mode generator uses the
``apply_*`` methods, so both paths mutate and broadcast identically.

Per-message failures never escape: a malformed payload is logged with its
topic and dropped, an unknown topic is dropped quietly, and the next
message is processed as usual.
"""

from typing import TYPE_CHECKING, Any, Optional, Union

import structlog

from bookrelay.core.errors import MalformedMessage
from bookrelay.domain.events import (
    DiscoveryEvent,
    HealthEvent,
    HealthUpdate,
    InboundEvent,
    MarketDiscovery,
    MarketRemoved,
    OrderBookEvent,
    OrderBookUpdate,
    OutboundEvent,
    StatusEvent,
)
from bookrelay.domain.models import MarketOrderBook, NodeHealth
from bookrelay.services.dispatcher import FanoutDispatcher
from bookrelay.services.reconciler import Reconciler
from bookrelay.services.router import TopicRouter
from bookrelay.services.snapshot_store import SnapshotStore

if TYPE_CHECKING:
    from bookrelay.services.metrics import MetricsEmitter

log = structlog.get_logger()


class Relay:
    """Applies inbound events to the store and broadcasts the results.

    Usage:
        relay = Relay(store, dispatcher)
        await bus.start(relay.handle_message)
    """

    def __init__(
        self,
        store: SnapshotStore,
        dispatcher: FanoutDispatcher,
        router: Optional[TopicRouter] = None,
        reconciler: Optional[Reconciler] = None,
        metrics: Optional["MetricsEmitter"] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._router = router or TopicRouter()
        self._reconciler = reconciler or Reconciler(store)
        self._metrics = metrics
        self._processed = 0
        self._malformed = 0
        self._log = log.bind(component="relay")

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    def processed_count(self) -> int:
        return self._processed

    @property
    def malformed_count(self) -> int:
        return self._malformed

    async def handle_message(self, topic: str, payload: Union[str, bytes]) -> None:
        """Bus handler. Coroutine so it fits BusSubscriber; never awaits."""
        self.process(topic, payload)

    def process(self, topic: str, payload: Union[str, bytes]) -> Optional[OutboundEvent]:
        """Route, apply and broadcast one raw bus message.

        Returns:
            The outbound event that was broadcast, if any.
        """
        try:
            event = self._router.route(topic, payload)
        except MalformedMessage as e:
            self._malformed += 1
            self._log.error("malformed_message", topic=topic, reason=e.reason)
            if self._metrics:
                self._metrics.record_malformed(self._router.family(topic))
            return None

        if event is None:
            self._log.debug("unrecognized_message", topic=topic)
            if self._metrics:
                self._metrics.record_unrecognized()
            return None

        try:
            return self.apply(event)
        except Exception:
            # A bug in applying one message must not stop the stream
            self._log.exception("message_apply_failed", topic=topic)
            return None

    def apply(self, event: InboundEvent) -> Optional[OutboundEvent]:
        """Apply a parsed inbound event."""
        if isinstance(event, HealthEvent):
            outbound: Optional[OutboundEvent] = self.apply_health(event.node_id, event.health)
            kind = "health"
        elif isinstance(event, OrderBookEvent):
            outbound = self.apply_orderbook(event.book)
            kind = "orderbook"
        elif isinstance(event, StatusEvent):
            outbound = self.apply_status(event.event_id, event.status)
            kind = "status"
        elif isinstance(event, DiscoveryEvent):
            outbound = self.apply_discovery(event.total_markets)
            kind = "discovery"
        else:
            raise TypeError(f"unsupported inbound event: {type(event).__name__}")

        self._processed += 1
        if self._metrics:
            self._metrics.record_message(kind)
            self._metrics.set_entities(
                health=self._store.health_count,
                orderbooks=self._store.orderbook_count,
                statuses=self._store.status_count,
            )
        return outbound

    def apply_health(self, node_id: str, health: NodeHealth) -> HealthUpdate:
        record = self._store.upsert_health(node_id, health)
        update = HealthUpdate(node_id=node_id, health=record, timestamp=record.last_update)
        self._dispatcher.broadcast(update)
        return update

    def apply_orderbook(self, book: MarketOrderBook) -> OrderBookUpdate:
        record = self._store.upsert_orderbook(book)
        update = OrderBookUpdate(book=record, timestamp=record.last_update)
        self._dispatcher.broadcast(update)
        return update

    def apply_status(self, event_id: str, status: str) -> Optional[MarketRemoved]:
        removed = self._reconciler.apply(StatusEvent(event_id=event_id, status=status))
        if removed is not None:
            self._dispatcher.broadcast(removed)
        return removed

    def apply_discovery(self, total_markets: int) -> MarketDiscovery:
        totals = self._store.set_total_markets(total_markets)
        update = MarketDiscovery(total_markets=total_markets, timestamp=totals.last_update)
        self._dispatcher.broadcast(update)
        return update

    def stats(self) -> dict[str, Any]:
        return {
            "processed": self._processed,
            "malformed": self._malformed,
            "health_records": self._store.health_count,
            "orderbooks": self._store.orderbook_count,
            "statuses": self._store.status_count,
            "total_markets": self._store.total_markets,
        }
