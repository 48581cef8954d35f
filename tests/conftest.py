"""Shared pytest fixtures for bookrelay tests.

- A manual clock so store timestamps are deterministic
- Store / dispatcher / relay wired together the way the app does it
- Recording and failing observers
- Wire payload builders
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import orjson
import pytest

from bookrelay.services.dispatcher import FanoutDispatcher
from bookrelay.services.relay import Relay
from bookrelay.services.snapshot_store import SnapshotStore


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingObserver:
    """Observer that keeps every event it is sent."""

    def __init__(self, name: str = "recorder", gate: Optional[asyncio.Event] = None) -> None:
        self._name = name
        self._gate = gate
        self.events: list[dict[str, Any]] = []
        self.closed = False
        self.close_calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def types(self) -> list[str]:
        return [event["type"] for event in self.events]

    async def send(self, event: dict[str, Any]) -> None:
        if self._gate is not None:
            await self._gate.wait()
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True
        self.close_calls += 1


class FailingObserver(RecordingObserver):
    """Observer whose send fails after a number of successful deliveries."""

    def __init__(self, name: str = "failing", fail_after: int = 0) -> None:
        super().__init__(name)
        self._fail_after = fail_after

    async def send(self, event: dict[str, Any]) -> None:
        if len(self.events) >= self._fail_after:
            raise ConnectionResetError("socket went away")
        await super().send(event)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock) -> SnapshotStore:
    return SnapshotStore(clock=clock)


@pytest.fixture
def dispatcher(store) -> FanoutDispatcher:
    return FanoutDispatcher(store, max_queue_size=100)


@pytest.fixture
def relay(store, dispatcher) -> Relay:
    return Relay(store, dispatcher)


@pytest.fixture
def recording_observer() -> Callable[..., RecordingObserver]:
    """Factory for RecordingObserver instances."""
    return RecordingObserver


@pytest.fixture
def failing_observer() -> Callable[..., FailingObserver]:
    """Factory for FailingObserver instances."""
    return FailingObserver


@pytest.fixture
def manual_clock() -> Callable[..., ManualClock]:
    return ManualClock


# =============================================================================
# Wire payloads
# =============================================================================


def make_health(**overrides: Any) -> dict[str, Any]:
    payload = {
        "cpuUsage": 50,
        "memoryUsage": 40.5,
        "activeMarkets": 3,
        "cpuCores": 8,
        "loadAverage": 1.5,
        "freeDiskSpaceMB": 20000,
        "isHealthy": True,
    }
    payload.update(overrides)
    return payload


def make_side(market_id: str = "YES", **overrides: Any) -> dict[str, Any]:
    side = {
        "marketId": market_id,
        "bids": [
            {"price": 45, "quantity": 1000, "count": 3},
            {"price": 44, "quantity": 1500, "count": 5},
        ],
        "asks": [
            {"price": 47, "quantity": 800, "count": 2},
            {"price": 48, "quantity": 1200, "count": 4},
        ],
    }
    side.update(overrides)
    return side


def make_orderbook(event_id: str = "E1", node_id: str = "10.0.0.1", **overrides: Any) -> dict[str, Any]:
    payload = {
        "type": "orderbook_update",
        "eventId": event_id,
        "nodeId": node_id,
        "marketA": make_side("YES"),
        "marketB": make_side("NO"),
    }
    payload.update(overrides)
    return payload


def encode(payload: Any) -> str:
    return orjson.dumps(payload).decode()


@pytest.fixture
def health_payload() -> Callable[..., dict[str, Any]]:
    return make_health


@pytest.fixture
def side_payload() -> Callable[..., dict[str, Any]]:
    return make_side


@pytest.fixture
def orderbook_payload() -> Callable[..., dict[str, Any]]:
    return make_orderbook


@pytest.fixture
def wire() -> Callable[[Any], str]:
    """JSON-encode a payload the way publishers put it on the bus."""
    return encode
