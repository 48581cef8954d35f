"""Services - aggregation, reconciliation, fan-out and metrics."""

from bookrelay.services.degraded import DegradedModeGenerator
from bookrelay.services.dispatcher import FanoutDispatcher, ObserverSlot
from bookrelay.services.metrics import MetricsEmitter
from bookrelay.services.reconciler import Reconciler
from bookrelay.services.relay import Relay
from bookrelay.services.router import TopicRouter
from bookrelay.services.snapshot_store import SnapshotStore

__all__ = [
    "TopicRouter",
    "SnapshotStore",
    "Reconciler",
    "FanoutDispatcher",
    "ObserverSlot",
    "Relay",
    "DegradedModeGenerator",
    "MetricsEmitter",
]
