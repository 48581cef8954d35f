"""Snapshot records held by the store.

All records are frozen dataclasses. The store replaces a record wholesale on
every update, so a reader holding a reference never sees a half-applied one.

Payload parsing lives here as ``from_payload`` classmethods. They raise
ValueError with a short reason when the payload does not match the expected
shape; the router turns that into MalformedMessage.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

Number = Union[int, float]

TERMINAL_STATUSES = frozenset({"CLOSED", "CLEARED"})


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------


def _require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be an object")
    return value


def _number(data: Mapping[str, Any], key: str, required: bool = True) -> Optional[Number]:
    value = data.get(key)
    if value is None:
        if required:
            raise ValueError(f"missing {key}")
        return None
    # bool is an int subclass; a flag is never a valid measurement
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return value


def _integer(data: Mapping[str, Any], key: str, required: bool = True) -> Optional[int]:
    value = _number(data, key, required)
    if value is None:
        return None
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{key} must be an integer")
        value = int(value)
    return value


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _isoformat(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


# ----------------------------------------------------------------------
# Node health
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class NodeHealth:
    """Latest health metrics reported by one node.

    Attributes:
        cpu_usage: CPU usage percent.
        memory_usage: Memory usage percent.
        is_healthy: Node's own health verdict.
        active_markets: Markets the node is currently tracking.
        cpu_cores: Core count.
        load_average: 1-minute load average.
        free_disk_space_mb: Free disk space in MB.
        last_update: Set by the store when the record was written.
    """

    cpu_usage: Number
    memory_usage: Number
    is_healthy: bool
    active_markets: Optional[int] = None
    cpu_cores: Optional[int] = None
    load_average: Optional[Number] = None
    free_disk_space_mb: Optional[Number] = None
    last_update: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "NodeHealth":
        data = _require_mapping(payload, "health payload")
        is_healthy = data.get("isHealthy")
        if not isinstance(is_healthy, bool):
            raise ValueError("isHealthy must be a boolean")
        return cls(
            cpu_usage=_number(data, "cpuUsage"),
            memory_usage=_number(data, "memoryUsage"),
            is_healthy=is_healthy,
            active_markets=_integer(data, "activeMarkets", required=False),
            cpu_cores=_integer(data, "cpuCores", required=False),
            load_average=_number(data, "loadAverage", required=False),
            free_disk_space_mb=_number(data, "freeDiskSpaceMB", required=False),
        )

    def is_live(self, now: datetime, stale_after: timedelta) -> bool:
        """A node counts as healthy only if it says so and reported recently."""
        if not self.is_healthy or self.last_update is None:
            return False
        return now - self.last_update < stale_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "activeMarkets": self.active_markets,
            "cpuCores": self.cpu_cores,
            "loadAverage": self.load_average,
            "freeDiskSpaceMB": self.free_disk_space_mb,
            "isHealthy": self.is_healthy,
            "lastUpdate": _isoformat(self.last_update),
        }


# ----------------------------------------------------------------------
# Order books
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class PriceLevel:
    """One aggregated price level."""

    price: Number
    quantity: Number
    order_count: int = 1

    @classmethod
    def from_payload(cls, payload: Any) -> "PriceLevel":
        data = _require_mapping(payload, "price level")
        price = _number(data, "price")
        quantity = _number(data, "quantity")
        if price < 0:
            raise ValueError(f"price must be non-negative, got {price}")
        if quantity < 0:
            raise ValueError(f"quantity must be non-negative, got {quantity}")
        count = _integer(data, "count", required=False)
        return cls(price=price, quantity=quantity, order_count=1 if count is None else count)

    def to_dict(self) -> dict[str, Any]:
        return {"price": self.price, "quantity": self.quantity, "count": self.order_count}


def _parse_levels(value: Any, what: str) -> tuple[PriceLevel, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    levels = tuple(PriceLevel.from_payload(item) for item in value)
    prices = [level.price for level in levels]
    if len(set(prices)) != len(prices):
        raise ValueError(f"{what} has duplicate price levels")
    return levels


def best_bid_of(bids: tuple[PriceLevel, ...]) -> Optional[Number]:
    return max((level.price for level in bids), default=None)


def best_ask_of(asks: tuple[PriceLevel, ...]) -> Optional[Number]:
    return min((level.price for level in asks), default=None)


@dataclass(frozen=True)
class BookSide:
    """One outcome of a market (conventionally YES/NO).

    best_bid/best_ask always equal the top of the levels when levels exist.
    With no levels on a side, whatever the publisher sent is kept.
    """

    market_id: str
    bids: tuple[PriceLevel, ...] = ()
    asks: tuple[PriceLevel, ...] = ()
    best_bid: Optional[Number] = None
    best_ask: Optional[Number] = None
    total_orders: int = 0

    @classmethod
    def from_payload(cls, payload: Any, what: str = "side") -> "BookSide":
        data = _require_mapping(payload, what)
        market_id = data.get("marketId")
        if not isinstance(market_id, str):
            raise ValueError(f"{what}.marketId must be a string")
        bids = _parse_levels(data.get("bids"), f"{what}.bids")
        asks = _parse_levels(data.get("asks"), f"{what}.asks")
        total_orders = _integer(data, "totalOrders", required=False)
        if total_orders is None:
            total_orders = sum(level.order_count for level in bids + asks)
        return cls.build(
            market_id=market_id,
            bids=bids,
            asks=asks,
            best_bid=_number(data, "bestBid", required=False),
            best_ask=_number(data, "bestAsk", required=False),
            total_orders=total_orders,
        )

    @classmethod
    def build(
        cls,
        market_id: str,
        bids: tuple[PriceLevel, ...],
        asks: tuple[PriceLevel, ...],
        best_bid: Optional[Number] = None,
        best_ask: Optional[Number] = None,
        total_orders: int = 0,
    ) -> "BookSide":
        """Create a side with best prices derived from its levels."""
        return cls(
            market_id=market_id,
            bids=bids,
            asks=asks,
            best_bid=best_bid_of(bids) if bids else best_bid,
            best_ask=best_ask_of(asks) if asks else best_ask,
            total_orders=total_orders,
        )

    def with_levels(
        self,
        bids: Optional[tuple[PriceLevel, ...]] = None,
        asks: Optional[tuple[PriceLevel, ...]] = None,
    ) -> "BookSide":
        """Copy with replaced levels and re-derived best prices."""
        return BookSide.build(
            market_id=self.market_id,
            bids=self.bids if bids is None else bids,
            asks=self.asks if asks is None else asks,
            best_bid=self.best_bid,
            best_ask=self.best_ask,
            total_orders=self.total_orders,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "marketId": self.market_id,
            "bids": [level.to_dict() for level in self.bids],
            "asks": [level.to_dict() for level in self.asks],
            "bestBid": self.best_bid,
            "bestAsk": self.best_ask,
            "totalOrders": self.total_orders,
        }


@dataclass(frozen=True)
class MarketOrderBook:
    """Order book for one market as replicated on one node."""

    event_id: str
    node_id: str
    market_a: BookSide
    market_b: BookSide
    last_update: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.node_id, self.event_id)

    @classmethod
    def from_payload(cls, payload: Any) -> "MarketOrderBook":
        data = _require_mapping(payload, "orderbook payload")
        return cls(
            event_id=_string(data, "eventId"),
            node_id=_string(data, "nodeId"),
            market_a=BookSide.from_payload(data.get("marketA"), "marketA"),
            market_b=BookSide.from_payload(data.get("marketB"), "marketB"),
        )

    def with_sides(self, market_a: BookSide, market_b: BookSide) -> "MarketOrderBook":
        return replace(self, market_a=market_a, market_b=market_b)


# ----------------------------------------------------------------------
# Market status and totals
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class MarketStatus:
    """Last status reported for a market. Kept after eviction for debugging."""

    event_id: str
    status: str
    last_update: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class SystemTotals:
    """System-wide market count from discovery. None until first reported."""

    total_markets: Optional[int] = None
    last_update: Optional[datetime] = None


@dataclass(frozen=True)
class SystemSummary:
    """Aggregate view used by the terminal renderer and /health."""

    total_nodes: int = 0
    healthy_nodes: int = 0
    active_markets: int = 0
    total_markets: Optional[int] = None
    node_markets: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalNodes": self.total_nodes,
            "healthyNodes": self.healthy_nodes,
            "activeMarkets": self.active_markets,
            "totalMarkets": self.total_markets,
            "nodeMarkets": dict(self.node_markets),
        }
