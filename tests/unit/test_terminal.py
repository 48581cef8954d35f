"""Unit tests for the terminal observer."""

import asyncio
import io

import pytest

from bookrelay.domain.models import MarketOrderBook, NodeHealth
from bookrelay.observers.terminal import TerminalObserver, format_event, node_role


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def terminal(store, stream):
    return TerminalObserver(store, stream=stream, summary_interval=0)


class TestNodeRole:

    @pytest.mark.parametrize(
        "node_id,role",
        [
            ("100.70.127.124", "MASTER"),
            ("100.70.127.125", "WORKER"),
            ("192.168.1.100", "WORKER"),
        ],
    )
    def test_default_hint(self, node_id, role):
        assert node_role(node_id) == role

    def test_custom_hint(self):
        assert node_role("leader-1", master_hint="leader") == "MASTER"
        assert node_role("100.70.127.124", master_hint="leader") == "WORKER"

    def test_empty_hint_means_no_masters(self):
        assert node_role("100.70.127.124", master_hint="") == "WORKER"


class TestFormatEvent:

    def test_health(self):
        line = format_event({
            "type": "health_update",
            "nodeId": "100.70.127.124",
            "health": {"cpuUsage": 45.25, "memoryUsage": 60, "isHealthy": True, "activeMarkets": None},
            "timestamp": "2024-01-01T12:00:05+00:00",
        })
        assert line.startswith("12:00:05 health")
        assert "(MASTER)" in line
        assert "HEALTHY" in line
        assert "cpu=45.2%" in line
        assert "mem=60%" in line
        assert "markets=N/A" in line

    def test_orderbook(self, orderbook_payload):
        book = MarketOrderBook.from_payload(orderbook_payload("E1", "n1"))
        line = format_event({
            "type": "orderbook_update",
            "eventId": "E1",
            "nodeId": "n1",
            "marketA": book.market_a.to_dict(),
            "marketB": book.market_b.to_dict(),
            "timestamp": "2024-01-01T12:00:00+00:00",
        })
        assert "E1 @ n1" in line
        assert "YES 45/47 (spread 2" in line

    def test_orderbook_empty_side(self):
        side = {"marketId": "no", "bestBid": None, "bestAsk": None, "totalOrders": 0}
        line = format_event({
            "type": "orderbook_update",
            "eventId": "E1",
            "nodeId": "n1",
            "marketA": side,
            "marketB": side,
            "timestamp": "",
        })
        assert "NO N/A/N/A (no spread, 0 orders)" in line

    def test_removed_and_discovery(self):
        removed = format_event({"type": "market_removed", "eventId": "E1", "status": "CLOSED", "timestamp": ""})
        discovery = format_event({"type": "market_discovery", "totalMarkets": 25, "timestamp": ""})
        assert "removed  E1 (CLOSED)" in removed
        assert discovery.endswith("total=25")


class TestRenderSummary:

    def test_empty_store(self, terminal):
        lines = terminal.render_summary()
        assert "  no health data received yet" in lines
        assert "  no order book data received yet" in lines
        assert "  total markets: N/A" in lines

    def test_masters_listed_first(self, terminal, store):
        health = NodeHealth(cpu_usage=10.0, memory_usage=20.0, is_healthy=True)
        store.upsert_health("10.0.0.9", health)
        store.upsert_health("100.70.127.124", health)

        lines = terminal.render_summary()
        nodes = [line for line in lines if "(MASTER)" in line or "(WORKER)" in line]
        assert "100.70.127.124 (MASTER)" in nodes[0]
        assert "10.0.0.9 (WORKER)" in nodes[1]

    def test_stale_node_is_unhealthy(self, store, stream, clock):
        terminal = TerminalObserver(store, stream=stream, summary_interval=0, stale_after=60)
        store.upsert_health("n1", NodeHealth(cpu_usage=1.0, memory_usage=1.0, is_healthy=True))
        clock.advance(90)

        lines = terminal.render_summary()
        node_line = next(line for line in lines if line.startswith("  n1"))
        assert "UNHEALTHY (90s ago)" in node_line
        assert "  nodes: 1 (0 healthy)" in lines

    def test_market_counts(self, terminal, store, orderbook_payload):
        store.upsert_orderbook(MarketOrderBook.from_payload(orderbook_payload("E1", "n1")))
        store.upsert_orderbook(MarketOrderBook.from_payload(orderbook_payload("E2", "n1")))
        store.set_total_markets(25)

        lines = terminal.render_summary()
        assert "  n1 (WORKER): 2 markets" in lines
        assert "  active markets: 2" in lines
        assert "  total markets: 25" in lines


class TestObserver:

    async def test_receives_replay_and_live(self, terminal, stream, relay, dispatcher):
        relay.apply_discovery(5)
        dispatcher.attach(terminal)
        relay.apply_status("E1", "CLEARED")
        await dispatcher.flush()

        output = stream.getvalue().splitlines()
        assert len(output) == 2
        assert output[0].endswith("total=5")
        assert "removed  E1 (CLEARED)" in output[1]
        assert terminal.lines_written == 2

    async def test_summary_loop_writes_periodically(self, store, stream):
        terminal = TerminalObserver(store, stream=stream, summary_interval=0.01)
        await terminal.start()
        try:
            for _ in range(100):
                if "=== SUMMARY ===" in stream.getvalue():
                    break
                await asyncio.sleep(0.01)
        finally:
            await terminal.stop()

        assert "=== NODE HEALTH ===" in stream.getvalue()
        assert not terminal.is_running
