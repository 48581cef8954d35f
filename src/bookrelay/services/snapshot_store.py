"""In-memory snapshot of the latest known state per entity.

Three independent namespaces plus a totals singleton:

- health by node id
- order books by node id, then by event id
- market status by event id

Dicts preserve insertion order, which is the order replay walks them in.
Updating an existing key keeps its original position.

Only the Relay mutates the store. Everything else (replay, the terminal
summary, /health) reads through the accessor methods, and gets references
to frozen records.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

import structlog

from bookrelay.domain.events import (
    HealthUpdate,
    MarketDiscovery,
    OrderBookUpdate,
    OutboundEvent,
)
from bookrelay.domain.models import (
    MarketOrderBook,
    MarketStatus,
    NodeHealth,
    SystemSummary,
    SystemTotals,
)

log = structlog.get_logger()

Clock = Callable[[], datetime]

DEFAULT_STALE_AFTER = timedelta(seconds=60)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore:
    """Authoritative in-memory state for the relay.

    Usage:
        store = SnapshotStore()
        store.upsert_health("10.0.0.1", health)
        store.upsert_orderbook(book)
        removed_from = store.evict_market("E1")
        events = store.replay_events()
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utc_now
        self._health: dict[str, NodeHealth] = {}
        self._orderbooks: dict[str, dict[str, MarketOrderBook]] = {}
        self._status: dict[str, MarketStatus] = {}
        self._totals = SystemTotals()

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert_health(self, node_id: str, health: NodeHealth) -> NodeHealth:
        """Replace a node's health record, stamping it with the current time."""
        record = replace(health, last_update=self._clock())
        self._health[node_id] = record
        return record

    def upsert_orderbook(self, book: MarketOrderBook) -> MarketOrderBook:
        """Replace the order book stored under ``book.key``."""
        record = replace(book, last_update=self._clock())
        node_id, event_id = record.key
        self._orderbooks.setdefault(node_id, {})[event_id] = record
        return record

    def delete_orderbook(self, node_id: str, event_id: str) -> bool:
        """Remove one node's copy of a market. Missing keys are a no-op.

        Returns:
            True if a record was removed.
        """
        books = self._orderbooks.get(node_id)
        if books is None:
            return False
        return books.pop(event_id, None) is not None

    def evict_market(self, event_id: str) -> list[str]:
        """Remove a market from every node's order-book map.

        Node maps are kept even when they become empty, so the node still
        shows up (with no markets) to the renderer.

        Returns:
            Node ids that held the market.
        """
        removed_from = [
            node_id
            for node_id in list(self._orderbooks)
            if self.delete_orderbook(node_id, event_id)
        ]
        return removed_from

    def upsert_status(self, event_id: str, status: str) -> MarketStatus:
        record = MarketStatus(event_id=event_id, status=status, last_update=self._clock())
        self._status[event_id] = record
        return record

    def set_total_markets(self, total_markets: int) -> SystemTotals:
        self._totals = SystemTotals(total_markets=total_markets, last_update=self._clock())
        return self._totals

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_health(self, node_id: str) -> Optional[NodeHealth]:
        return self._health.get(node_id)

    def get_orderbook(self, node_id: str, event_id: str) -> Optional[MarketOrderBook]:
        return self._orderbooks.get(node_id, {}).get(event_id)

    def get_status(self, event_id: str) -> Optional[MarketStatus]:
        return self._status.get(event_id)

    def iter_health(self) -> Iterator[tuple[str, NodeHealth]]:
        """Health records in insertion order (snapshot copy)."""
        return iter(list(self._health.items()))

    def iter_orderbooks(self) -> Iterator[MarketOrderBook]:
        """Order books grouped by node, each group in insertion order."""
        books = [
            book
            for node_books in self._orderbooks.values()
            for book in node_books.values()
        ]
        return iter(books)

    def orderbook_nodes(self) -> list[str]:
        """Node ids that have ever reported an order book."""
        return list(self._orderbooks)

    @property
    def total_markets(self) -> Optional[int]:
        return self._totals.total_markets

    @property
    def health_count(self) -> int:
        return len(self._health)

    @property
    def orderbook_count(self) -> int:
        return sum(len(books) for books in self._orderbooks.values())

    @property
    def status_count(self) -> int:
        return len(self._status)

    @property
    def entity_count(self) -> int:
        """Number of entities replay would emit (statuses are never replayed)."""
        totals = 1 if self._totals.total_markets is not None else 0
        return self.health_count + self.orderbook_count + totals

    def summary(self, stale_after: timedelta = DEFAULT_STALE_AFTER) -> SystemSummary:
        now = self._clock()
        healthy = sum(1 for health in self._health.values() if health.is_live(now, stale_after))
        node_markets = {node_id: len(books) for node_id, books in self._orderbooks.items()}
        return SystemSummary(
            total_nodes=len(self._health),
            healthy_nodes=healthy,
            active_markets=sum(node_markets.values()),
            total_markets=self._totals.total_markets,
            node_markets=node_markets,
        )

    def replay_events(self) -> list[OutboundEvent]:
        """Build the cold-start replay for a newly attached observer.

        Order: every health record, then every order book grouped by node,
        then the market total if one has been reported.
        """
        timestamp = self._clock()
        events: list[OutboundEvent] = [
            HealthUpdate(node_id=node_id, health=health, timestamp=timestamp)
            for node_id, health in self._health.items()
        ]
        events.extend(
            OrderBookUpdate(book=book, timestamp=timestamp)
            for book in self.iter_orderbooks()
        )
        if self._totals.total_markets is not None:
            events.append(
                MarketDiscovery(total_markets=self._totals.total_markets, timestamp=timestamp)
            )
        return events
