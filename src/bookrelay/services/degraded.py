"""Degraded-mode generator.

When the bus is unreachable at startup the relay keeps serving observers
from synthesized data: a fixed seed of three nodes and two order books,
then a periodic random walk over the stored records.

Everything goes through the Relay's apply paths, so synthesized updates are
stored and broadcast exactly like live ones.
"""

import asyncio
import random
from dataclasses import replace
from typing import Any, Callable, Optional

import structlog

from bookrelay.core.lifecycle import BaseComponent, HealthCheckResult
from bookrelay.domain.models import (
    BookSide,
    MarketOrderBook,
    NodeHealth,
    PriceLevel,
)
from bookrelay.services.relay import Relay

log = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_ORDERBOOK_TICK_PROBABILITY = 0.3
DEFAULT_TOTAL_MARKETS = 25

CPU_STEP = 5.0
MEMORY_STEP = 2.5


SEED_HEALTH: dict[str, dict[str, Any]] = {
    "100.70.127.124": {
        "cpuUsage": 45.2,
        "memoryUsage": 67.8,
        "activeMarkets": 12,
        "cpuCores": 8,
        "loadAverage": 2.34,
        "freeDiskSpaceMB": 45000,
        "isHealthy": True,
    },
    "100.70.127.125": {
        "cpuUsage": 32.1,
        "memoryUsage": 54.3,
        "activeMarkets": 8,
        "cpuCores": 4,
        "loadAverage": 1.87,
        "freeDiskSpaceMB": 32000,
        "isHealthy": True,
    },
    "192.168.1.100": {
        "cpuUsage": 28.5,
        "memoryUsage": 42.1,
        "activeMarkets": 6,
        "cpuCores": 4,
        "loadAverage": 1.22,
        "freeDiskSpaceMB": 28000,
        "isHealthy": True,
    },
}


def _levels(*rows: tuple[int, int, int]) -> list[dict[str, int]]:
    return [{"price": p, "quantity": q, "count": c} for p, q, c in rows]


SEED_ORDERBOOKS: list[dict[str, Any]] = [
    {
        "eventId": "DEMO_EVENT_001",
        "nodeId": "100.70.127.124",
        "marketA": {
            "marketId": "YES",
            "bids": _levels((45, 1000, 3), (44, 1500, 5), (43, 800, 2)),
            "asks": _levels((47, 800, 2), (48, 1200, 4), (49, 600, 1)),
            "totalOrders": 14,
        },
        "marketB": {
            "marketId": "NO",
            "bids": _levels((52, 900, 2), (51, 1100, 3), (50, 700, 2)),
            "asks": _levels((54, 700, 2), (55, 1000, 3), (56, 500, 1)),
            "totalOrders": 10,
        },
    },
    {
        "eventId": "DEMO_EVENT_002",
        "nodeId": "100.70.127.125",
        "marketA": {
            "marketId": "YES",
            "bids": _levels((62, 750, 2), (61, 900, 4)),
            "asks": _levels((64, 650, 3), (65, 800, 2)),
            "totalOrders": 11,
        },
        "marketB": {
            "marketId": "NO",
            "bids": _levels((35, 1200, 3), (34, 800, 2)),
            "asks": _levels((37, 900, 2), (38, 1100, 4)),
            "totalOrders": 11,
        },
    },
]


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _shift_top(
    levels: tuple[PriceLevel, ...],
    delta: int,
    pick_best: Callable[..., PriceLevel],
    forbidden: Callable[[float], bool],
) -> tuple[PriceLevel, ...]:
    """Move the best level's price by delta, unless that is not allowed.

    Args:
        levels: Bids or asks of one side.
        delta: +1 or -1.
        pick_best: max for bids, min for asks.
        forbidden: Predicate on the new price (crossing the book).
    """
    if not levels:
        return levels
    best = pick_best(levels, key=lambda level: level.price)
    new_price = best.price + delta
    if new_price < 0 or forbidden(new_price):
        return levels
    if any(level.price == new_price for level in levels):
        return levels
    return tuple(
        replace(level, price=new_price) if level is best else level
        for level in levels
    )


def perturb_side(side: BookSide, rng: random.Random) -> BookSide:
    """Shift the top bid and the top ask by one tick each, independently."""
    bid_delta = 1 if rng.random() > 0.5 else -1
    ask_delta = 1 if rng.random() > 0.5 else -1

    best_ask = side.best_ask if side.asks else None
    bids = _shift_top(
        side.bids,
        bid_delta,
        max,
        lambda price: best_ask is not None and price >= best_ask,
    )
    best_bid = max((level.price for level in bids), default=None)
    asks = _shift_top(
        side.asks,
        ask_delta,
        min,
        lambda price: best_bid is not None and price <= best_bid,
    )
    return side.with_levels(bids=bids, asks=asks)


class DegradedModeGenerator(BaseComponent):
    """Synthesizes health and order-book traffic while the bus is down.

    Usage:
        generator = DegradedModeGenerator(relay)
        await generator.start()   # seeds, then ticks every interval
        await generator.stop()
    """

    def __init__(
        self,
        relay: Relay,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        orderbook_tick_probability: float = DEFAULT_ORDERBOOK_TICK_PROBABILITY,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(name="degraded_mode")
        self._relay = relay
        self._store = relay.store
        self._interval = interval_seconds
        self._tick_probability = orderbook_tick_probability
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None
        self._should_run = False
        self._ticks = 0
        self._log = log.bind(component="degraded_mode")

    @property
    def ticks(self) -> int:
        return self._ticks

    def seed(self) -> None:
        """Load the fixed demo snapshot through the relay."""
        for node_id, payload in SEED_HEALTH.items():
            self._relay.apply_health(node_id, NodeHealth.from_payload(payload))
        for payload in SEED_ORDERBOOKS:
            self._relay.apply_orderbook(MarketOrderBook.from_payload(payload))
        self._relay.apply_discovery(DEFAULT_TOTAL_MARKETS)

        self._log.info(
            "degraded_mode_seeded",
            nodes=len(SEED_HEALTH),
            orderbooks=len(SEED_ORDERBOOKS),
            total_markets=DEFAULT_TOTAL_MARKETS,
        )

    def tick(self) -> None:
        """One random-walk step over the current store contents."""
        self._ticks += 1

        for node_id, health in self._store.iter_health():
            cpu = health.cpu_usage + self._rng.uniform(-CPU_STEP, CPU_STEP)
            memory = health.memory_usage + self._rng.uniform(-MEMORY_STEP, MEMORY_STEP)
            self._relay.apply_health(
                node_id,
                replace(health, cpu_usage=_clamp(cpu), memory_usage=_clamp(memory)),
            )

        if self._rng.random() < self._tick_probability:
            # Only books still in the store are touched; evicted ones stay gone
            for book in self._store.iter_orderbooks():
                self._relay.apply_orderbook(
                    book.with_sides(
                        perturb_side(book.market_a, self._rng),
                        perturb_side(book.market_b, self._rng),
                    )
                )

    async def _do_start(self) -> None:
        self._log.warning(
            "degraded_mode_started",
            interval_seconds=self._interval,
            orderbook_tick_probability=self._tick_probability,
        )
        self.seed()
        self._should_run = True
        self._task = asyncio.create_task(self._tick_loop(), name="degraded_mode")

    async def _do_stop(self) -> None:
        self._should_run = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._log.info("degraded_mode_stopped", ticks=self._ticks)

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.degraded(
            "Serving synthesized data",
            ticks=self._ticks,
            interval_seconds=self._interval,
        )

    async def _tick_loop(self) -> None:
        while self._should_run:
            await asyncio.sleep(self._interval)
            try:
                self.tick()
            except Exception as e:
                self._log.error("degraded_tick_error", error=str(e))
