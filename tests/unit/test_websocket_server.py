"""
Unit tests for the WebSocket observer and RelayServer.

Tests:
- Snapshot replay and live streaming over a real WebSocket
- Push-only channel and disconnect handling
- /health, /metrics and the dashboard routes
"""

import asyncio

import pytest
from aiohttp import ClientSession, WSMsgType

from bookrelay.domain.models import NodeHealth
from bookrelay.observers.websocket import RelayServer
from bookrelay.services.metrics import MetricsEmitter


async def eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def health(cpu: float = 50) -> NodeHealth:
    return NodeHealth(cpu_usage=cpu, memory_usage=10, is_healthy=True)


@pytest.fixture
def health_state():
    return {"status": "healthy", "message": "OK"}


@pytest.fixture
async def server(dispatcher, tmp_path, health_state):
    async def provider():
        return dict(health_state)

    metrics = MetricsEmitter()
    metrics.record_message("health")

    server = RelayServer(
        dispatcher,
        port=0,
        host="127.0.0.1",
        static_dir=tmp_path,
        health_provider=provider,
        metrics_provider=metrics.get_metrics,
    )
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def base_url(server):
    return f"http://127.0.0.1:{server.port}"


class TestStreaming:

    async def test_port_zero_binds_free_port(self, server):
        assert server.is_running
        assert server.port > 0

    async def test_replay_then_live(self, server, base_url, relay, dispatcher):
        relay.apply_health("n1", health(cpu=10))
        relay.apply_discovery(25)

        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                first = await ws.receive_json(timeout=2)
                second = await ws.receive_json(timeout=2)
                assert first["type"] == "health_update"
                assert first["nodeId"] == "n1"
                assert second == {
                    "type": "market_discovery",
                    "totalMarkets": 25,
                    "timestamp": second["timestamp"],
                }

                relay.apply_health("n2", health(cpu=20))
                live = await ws.receive_json(timeout=2)
                assert live["nodeId"] == "n2"
                assert live["health"]["cpuUsage"] == 20

    async def test_empty_store_then_live(self, server, base_url, relay, dispatcher):
        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                await eventually(lambda: dispatcher.observer_count == 1)
                relay.apply_status("E1", "CLOSED")
                msg = await ws.receive_json(timeout=2)
                assert msg["type"] == "market_removed"
                assert msg["eventId"] == "E1"

        assert server.connections_accepted == 1

    async def test_inbound_frames_ignored(self, server, base_url, relay, dispatcher):
        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                await eventually(lambda: dispatcher.observer_count == 1)
                await ws.send_str('{"type": "subscribe"}')
                await ws.send_str("garbage")

                relay.apply_discovery(3)
                msg = await ws.receive_json(timeout=2)
                assert msg["totalMarkets"] == 3
                assert dispatcher.observer_count == 1

    async def test_disconnect_detaches(self, server, base_url, dispatcher):
        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                await eventually(lambda: dispatcher.observer_count == 1)
                await ws.close()

        await eventually(lambda: dispatcher.observer_count == 0)

    async def test_many_observers_get_same_stream(self, server, base_url, relay, dispatcher):
        async with ClientSession() as session:
            sockets = [await session.ws_connect(f"{base_url}/") for _ in range(3)]
            try:
                await eventually(lambda: dispatcher.observer_count == 3)
                relay.apply_health("n1", health(cpu=1))
                relay.apply_health("n1", health(cpu=2))

                for ws in sockets:
                    a = await ws.receive_json(timeout=2)
                    b = await ws.receive_json(timeout=2)
                    assert [a["health"]["cpuUsage"], b["health"]["cpuUsage"]] == [1, 2]
            finally:
                for ws in sockets:
                    await ws.close()

    async def test_close_all_sends_going_away(self, server, base_url, dispatcher):
        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                await eventually(lambda: dispatcher.observer_count == 1)
                closer = asyncio.create_task(dispatcher.close_all(flush_timeout=0.5))

                msg = await ws.receive(timeout=2)
                assert msg.type == WSMsgType.CLOSE
                assert msg.data == 1001
                await closer

        assert dispatcher.observer_count == 0

    async def test_connect_after_close_is_refused(self, server, base_url, dispatcher):
        await dispatcher.close_all()

        async with ClientSession() as session:
            async with session.ws_connect(f"{base_url}/") as ws:
                msg = await ws.receive(timeout=2)
                assert msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED)


class TestHttpRoutes:

    async def test_health_ok(self, server, base_url):
        async with ClientSession() as session:
            async with session.get(f"{base_url}/health") as resp:
                assert resp.status == 200
                data = await resp.json()
                assert data["status"] == "healthy"

    async def test_health_degraded_is_200(self, server, base_url, health_state):
        health_state["status"] = "degraded"
        async with ClientSession() as session:
            async with session.get(f"{base_url}/health") as resp:
                assert resp.status == 200

    async def test_health_unhealthy_is_503(self, server, base_url, health_state):
        health_state["status"] = "unhealthy"
        async with ClientSession() as session:
            async with session.get(f"{base_url}/health") as resp:
                assert resp.status == 503

    async def test_health_without_provider(self, dispatcher):
        server = RelayServer(dispatcher, port=0, host="127.0.0.1")
        await server.start()
        try:
            async with ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{server.port}/health") as resp:
                    assert resp.status == 503
                    data = await resp.json()
                    assert data["status"] == "unknown"
        finally:
            await server.stop()

    async def test_metrics(self, server, base_url):
        async with ClientSession() as session:
            async with session.get(f"{base_url}/metrics") as resp:
                assert resp.status == 200
                text = await resp.text()
                assert 'bookrelay_messages_total{kind="health"} 1.0' in text

    async def test_dashboard_missing(self, server, base_url):
        async with ClientSession() as session:
            async with session.get(f"{base_url}/dashboard.html") as resp:
                assert resp.status == 404
                assert await resp.text() == "Dashboard not found"
            async with session.get(f"{base_url}/") as resp:
                assert resp.status == 404

    async def test_dashboard_served(self, server, base_url, tmp_path):
        (tmp_path / "dashboard.html").write_text("<html>relay</html>")

        async with ClientSession() as session:
            async with session.get(f"{base_url}/dashboard.html") as resp:
                assert resp.status == 200
                assert "relay" in await resp.text()
            async with session.get(f"{base_url}/") as resp:
                assert resp.status == 200
                assert resp.content_type == "text/html"


class TestLifecycle:

    async def test_port_in_use(self, server, dispatcher):
        other = RelayServer(dispatcher, port=server.port, host="127.0.0.1")
        with pytest.raises(OSError):
            await other.start()
        assert not other.is_running

    async def test_health_check(self, server):
        result = await server.health_check()
        assert result.status.value == "healthy"
        assert result.details["port"] == server.port

    async def test_stop_is_idempotent(self, dispatcher):
        server = RelayServer(dispatcher, port=0, host="127.0.0.1")
        await server.start()
        await server.stop()
        await server.stop()
        assert not server.is_running
