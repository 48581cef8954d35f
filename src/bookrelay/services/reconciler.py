"""Reconciler - applies market status changes to the snapshot store.

Market status is a system-wide fact while order books are per-node replicas
of the same market, so a terminal status evicts the market from every node,
not only the one whose topic carried the status.
"""

from typing import Optional

import structlog

from bookrelay.domain.events import MarketRemoved, StatusEvent
from bookrelay.domain.models import TERMINAL_STATUSES
from bookrelay.services.snapshot_store import SnapshotStore

log = structlog.get_logger()


class Reconciler:
    """Applies StatusEvents to the store.

    Usage:
        reconciler = Reconciler(store)
        removed = reconciler.apply(StatusEvent(event_id="E1", status="CLOSED"))
        if removed:
            dispatcher.broadcast(removed)
    """

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store
        self._log = log.bind(component="reconciler")

    def apply(self, event: StatusEvent) -> Optional[MarketRemoved]:
        """Record the status, evicting order books first if it is terminal.

        Returns:
            Exactly one MarketRemoved for a terminal status (even when no node
            held the market), None otherwise.
        """
        if event.status not in TERMINAL_STATUSES:
            self._store.upsert_status(event.event_id, event.status)
            self._log.debug("market_status_recorded", event_id=event.event_id, status=event.status)
            return None

        removed_from = self._store.evict_market(event.event_id)
        record = self._store.upsert_status(event.event_id, event.status)

        self._log.info(
            "market_evicted",
            event_id=event.event_id,
            status=event.status,
            nodes=removed_from,
        )
        return MarketRemoved(
            event_id=event.event_id,
            status=event.status,
            timestamp=record.last_update,
        )
