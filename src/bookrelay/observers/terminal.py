"""
Terminal observer - a compact text view of the relay for operators.

Prints one line per fan-out event and, every few seconds, a summary block
with per-node health and market counts. Attached to the dispatcher like any
other observer, so it also gets the snapshot replay on attach.
"""

import asyncio
import sys
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional, TextIO

import structlog

from bookrelay.core.lifecycle import BaseComponent
from bookrelay.domain.events import EventTypes

if TYPE_CHECKING:
    from bookrelay.services.snapshot_store import SnapshotStore

log = structlog.get_logger()

DEFAULT_MASTER_HINT = "127.124"
DEFAULT_SUMMARY_INTERVAL_SECONDS = 3.0
DEFAULT_STALE_AFTER_SECONDS = 60.0


def node_role(node_id: str, master_hint: str = DEFAULT_MASTER_HINT) -> str:
    """Display role for a node id. The relay itself never classifies nodes."""
    return "MASTER" if master_hint and master_hint in node_id else "WORKER"


def _fmt(value: Any, digits: int = 1, suffix: str = "") -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:.{digits}f}{suffix}"
    return f"{value}{suffix}"


def _side_line(side: dict[str, Any]) -> str:
    bid = side.get("bestBid")
    ask = side.get("bestAsk")
    if bid is not None and ask is not None:
        spread = f"spread {ask - bid:g}"
    else:
        spread = "no spread"
    return (
        f"{str(side.get('marketId', '?')).upper()} "
        f"{_fmt(bid)}/{_fmt(ask)} ({spread}, {side.get('totalOrders', 0)} orders)"
    )


def format_event(event: dict[str, Any], master_hint: str = DEFAULT_MASTER_HINT) -> str:
    """Render one outbound event as a single line."""
    event_type = event.get("type")
    clock = str(event.get("timestamp", ""))[11:19]

    if event_type == EventTypes.HEALTH_UPDATE:
        node_id = event["nodeId"]
        health = event["health"]
        status = "HEALTHY" if health.get("isHealthy") else "UNHEALTHY"
        return (
            f"{clock} health   {node_id} ({node_role(node_id, master_hint)}) {status} "
            f"cpu={_fmt(health.get('cpuUsage'), suffix='%')} "
            f"mem={_fmt(health.get('memoryUsage'), suffix='%')} "
            f"markets={_fmt(health.get('activeMarkets'))}"
        )
    if event_type == EventTypes.ORDERBOOK_UPDATE:
        return (
            f"{clock} book     {event['eventId']} @ {event['nodeId']}: "
            f"{_side_line(event['marketA'])} | {_side_line(event['marketB'])}"
        )
    if event_type == EventTypes.MARKET_REMOVED:
        return f"{clock} removed  {event['eventId']} ({event['status']})"
    if event_type == EventTypes.MARKET_DISCOVERY:
        return f"{clock} markets  total={event['totalMarkets']}"
    return f"{clock} {event_type}"


class TerminalObserver(BaseComponent):
    """Writes events and periodic summaries to a text stream.

    Usage:
        terminal = TerminalObserver(store)
        await terminal.start()           # starts the summary task
        dispatcher.attach(terminal)
        ...
        await terminal.stop()
    """

    def __init__(
        self,
        store: "SnapshotStore",
        stream: Optional[TextIO] = None,
        summary_interval: float = DEFAULT_SUMMARY_INTERVAL_SECONDS,
        master_hint: str = DEFAULT_MASTER_HINT,
        stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
    ) -> None:
        super().__init__(name="terminal")
        self._store = store
        self._stream = stream or sys.stdout
        self._summary_interval = summary_interval
        self._master_hint = master_hint
        self._stale_after = timedelta(seconds=stale_after)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._lines = 0
        self._log = log.bind(component="terminal")

    @property
    def lines_written(self) -> int:
        return self._lines

    # Observer interface

    async def send(self, event: dict[str, Any]) -> None:
        self._write(format_event(event, self._master_hint))

    async def close(self) -> None:
        self._closed = True

    # Summary

    def render_summary(self, now: Optional[datetime] = None) -> list[str]:
        """Build the summary block from the current store contents."""
        now = now or self._store.now()
        summary = self._store.summary(stale_after=self._stale_after)

        # Master nodes first, then the rest by id
        nodes = sorted(
            self._store.iter_health(),
            key=lambda item: (node_role(item[0], self._master_hint) != "MASTER", item[0]),
        )

        lines = ["=== NODE HEALTH ==="]
        if not nodes:
            lines.append("  no health data received yet")
        for node_id, health in nodes:
            live = health.is_live(now, self._stale_after)
            age = int((now - health.last_update).total_seconds()) if health.last_update else 0
            lines.append(
                f"  {node_id} ({node_role(node_id, self._master_hint)}) "
                f"{'HEALTHY' if live else 'UNHEALTHY'} ({age}s ago) "
                f"cpu={_fmt(health.cpu_usage, suffix='%')} "
                f"mem={_fmt(health.memory_usage, suffix='%')} "
                f"load={_fmt(health.load_average, digits=2)} "
                f"disk={_fmt(health.free_disk_space_mb, suffix='MB')}"
            )

        lines.append("=== ORDER BOOKS BY NODE ===")
        if not summary.node_markets:
            lines.append("  no order book data received yet")
        for node_id, count in summary.node_markets.items():
            lines.append(f"  {node_id} ({node_role(node_id, self._master_hint)}): {count} markets")

        lines.append("=== SUMMARY ===")
        lines.append(f"  nodes: {summary.total_nodes} ({summary.healthy_nodes} healthy)")
        lines.append(f"  active markets: {summary.active_markets}")
        lines.append(f"  total markets: {_fmt(summary.total_markets)}")
        return lines

    async def _do_start(self) -> None:
        self._closed = False
        if self._summary_interval > 0:
            self._task = asyncio.create_task(self._summary_loop(), name="terminal_summary")

    async def _do_stop(self) -> None:
        self._closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _summary_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._summary_interval)
            try:
                for line in self.render_summary():
                    self._write(line)
            except Exception as e:
                self._log.error("summary_render_error", error=str(e))

    def _write(self, line: str) -> None:
        self._stream.write(line + "\n")
        self._stream.flush()
        self._lines += 1
