"""Domain models - pure data structures with no I/O dependencies."""

from bookrelay.domain.events import (
    DiscoveryEvent,
    EventTypes,
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
from bookrelay.domain.models import (
    TERMINAL_STATUSES,
    BookSide,
    MarketOrderBook,
    MarketStatus,
    NodeHealth,
    PriceLevel,
    SystemSummary,
    SystemTotals,
)

__all__ = [
    # Snapshot records
    "NodeHealth",
    "PriceLevel",
    "BookSide",
    "MarketOrderBook",
    "MarketStatus",
    "SystemTotals",
    "SystemSummary",
    "TERMINAL_STATUSES",
    # Inbound events
    "HealthEvent",
    "OrderBookEvent",
    "StatusEvent",
    "DiscoveryEvent",
    "InboundEvent",
    # Outbound events
    "EventTypes",
    "HealthUpdate",
    "OrderBookUpdate",
    "MarketRemoved",
    "MarketDiscovery",
    "OutboundEvent",
]
