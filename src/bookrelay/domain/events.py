"""Inbound bus events and outbound fan-out events.

Inbound events are produced by the TopicRouter from raw bus messages, one
tagged type per topic family:

- metrics:{node_id}         -> HealthEvent
- orderbooks                -> OrderBookEvent (ids live in the payload)
- market_status:{event_id}  -> StatusEvent
- market_discovery          -> DiscoveryEvent

Outbound events are what every observer receives. ``to_dict`` gives the wire
shape, identical for the terminal and WebSocket observers:

- health_update     {nodeId, health, timestamp}
- orderbook_update  {eventId, nodeId, marketA, marketB, timestamp}
- market_removed    {eventId, status, timestamp}
- market_discovery  {totalMarkets, timestamp}
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Union

from bookrelay.domain.models import MarketOrderBook, NodeHealth

# ----------------------------------------------------------------------
# Inbound
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class HealthEvent:
    node_id: str
    health: NodeHealth


@dataclass(frozen=True)
class OrderBookEvent:
    book: MarketOrderBook


@dataclass(frozen=True)
class StatusEvent:
    event_id: str
    status: str


@dataclass(frozen=True)
class DiscoveryEvent:
    total_markets: int


InboundEvent = Union[HealthEvent, OrderBookEvent, StatusEvent, DiscoveryEvent]


# ----------------------------------------------------------------------
# Outbound
# ----------------------------------------------------------------------


class EventTypes:
    """Outbound event type constants."""

    HEALTH_UPDATE = "health_update"
    ORDERBOOK_UPDATE = "orderbook_update"
    MARKET_REMOVED = "market_removed"
    MARKET_DISCOVERY = "market_discovery"


@dataclass(frozen=True)
class HealthUpdate:
    """Published when a node's health record is written."""

    type: ClassVar[str] = EventTypes.HEALTH_UPDATE

    node_id: str
    health: NodeHealth
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "nodeId": self.node_id,
            "health": self.health.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class OrderBookUpdate:
    """Published when a (node, market) order book is written."""

    type: ClassVar[str] = EventTypes.ORDERBOOK_UPDATE

    book: MarketOrderBook
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "eventId": self.book.event_id,
            "nodeId": self.book.node_id,
            "marketA": self.book.market_a.to_dict(),
            "marketB": self.book.market_b.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MarketRemoved:
    """Published once per terminal status event."""

    type: ClassVar[str] = EventTypes.MARKET_REMOVED

    event_id: str
    status: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "eventId": self.event_id,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MarketDiscovery:
    """Published when the system-wide market count changes."""

    type: ClassVar[str] = EventTypes.MARKET_DISCOVERY

    total_markets: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "totalMarkets": self.total_markets,
            "timestamp": self.timestamp.isoformat(),
        }


OutboundEvent = Union[HealthUpdate, OrderBookUpdate, MarketRemoved, MarketDiscovery]
