"""
WebSocket observers and the HTTP listener that accepts them.

One listener serves everything browsers need:

    GET /                WebSocket upgrade, or the dashboard page
    GET /dashboard.html  the dashboard page
    GET /health          JSON health (200 healthy/degraded, 503 otherwise)
    GET /metrics         Prometheus text

The WebSocket channel is push-only. Every connection is attached to the
fan-out dispatcher as its own observer, receives the snapshot replay and
then live events, and is detached when the socket closes.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import orjson
import structlog
from aiohttp import WSCloseCode, WSMsgType, web

from bookrelay.core.errors import ObserverDeliveryFailure
from bookrelay.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus

if TYPE_CHECKING:
    from bookrelay.services.dispatcher import FanoutDispatcher

log = structlog.get_logger()

DASHBOARD_PAGE = "dashboard.html"
DEFAULT_STATIC_DIR = Path("static")
DEFAULT_HEARTBEAT_SECONDS = 30.0

HealthProvider = Callable[[], Awaitable[dict[str, Any]]]
MetricsProvider = Callable[[], bytes]


class WebSocketObserver:
    """Observer that writes each event as one JSON text frame."""

    def __init__(self, ws: web.WebSocketResponse, name: str) -> None:
        self._ws = ws
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, event: dict[str, Any]) -> None:
        if self._ws.closed:
            raise ObserverDeliveryFailure(self._name)
        await self._ws.send_str(orjson.dumps(event).decode())

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close(code=WSCloseCode.GOING_AWAY, message=b"relay shutting down")


class RelayServer(BaseComponent):
    """HTTP + WebSocket listener for browser observers.

    Usage:
        server = RelayServer(
            dispatcher,
            port=8080,
            health_provider=app.get_health,
            metrics_provider=metrics.get_metrics,
        )
        await server.start()
        # ws://localhost:8080/ streams events
        await server.stop()
    """

    def __init__(
        self,
        dispatcher: "FanoutDispatcher",
        port: int = 8080,
        host: str = "0.0.0.0",
        static_dir: Optional[Path] = None,
        health_provider: Optional[HealthProvider] = None,
        metrics_provider: Optional[MetricsProvider] = None,
        heartbeat: float = DEFAULT_HEARTBEAT_SECONDS,
    ) -> None:
        """Initialize the server.

        Args:
            dispatcher: Fan-out dispatcher connections are attached to.
            port: Port to listen on (0 picks a free one).
            host: Host to bind to.
            static_dir: Directory holding dashboard.html.
            health_provider: Async callable returning the health dict.
            metrics_provider: Callable returning Prometheus metrics bytes.
            heartbeat: WebSocket ping interval in seconds.
        """
        super().__init__(name="RelayServer")
        self._dispatcher = dispatcher
        self._port = port
        self._host = host
        self._static_dir = Path(static_dir) if static_dir else DEFAULT_STATIC_DIR
        self._health_provider = health_provider
        self._metrics_provider = metrics_provider
        self._heartbeat = heartbeat
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._connections = 0
        self._log = log.bind(component="relay_server")

    @property
    def port(self) -> int:
        """Bound port once started, otherwise the configured one."""
        if self._runner is not None and self._runner.addresses:
            return self._runner.addresses[0][1]
        return self._port

    @property
    def connections_accepted(self) -> int:
        return self._connections

    async def _do_start(self) -> None:
        self._app = web.Application()
        self._app.router.add_get("/", self._handle_root)
        self._app.router.add_get("/dashboard.html", self._handle_dashboard)
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/metrics", self._handle_metrics)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise

        self._log.info(
            "relay_server_started",
            host=self._host,
            port=self.port,
            endpoints=["/", "/dashboard.html", "/health", "/metrics"],
        )

    async def _do_stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._app = None
        self._runner = None
        self._site = None
        self._log.info("relay_server_stopped", connections_accepted=self._connections)

    async def _do_health_check(self) -> HealthCheckResult:
        if self._site is None:
            return HealthCheckResult.unhealthy("Server not running")
        return HealthCheckResult.healthy(
            uptime_seconds=self.uptime_seconds,
            port=self.port,
            observers=self._dispatcher.observer_count,
        )

    async def _handle_root(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        if ws.can_prepare(request).ok:
            return await self._serve_websocket(request, ws)
        return self._serve_dashboard()

    async def _handle_dashboard(self, request: web.Request) -> web.StreamResponse:
        return self._serve_dashboard()

    def _serve_dashboard(self) -> web.StreamResponse:
        page = self._static_dir / DASHBOARD_PAGE
        if not page.is_file():
            return web.Response(text="Dashboard not found", status=404)
        return web.FileResponse(page)

    async def _serve_websocket(
        self,
        request: web.Request,
        ws: web.WebSocketResponse,
    ) -> web.WebSocketResponse:
        await ws.prepare(request)

        self._connections += 1
        observer = WebSocketObserver(ws, name=f"ws-{self._connections}@{request.remote}")
        try:
            self._dispatcher.attach(observer)
        except RuntimeError:
            # Dispatcher already closed for shutdown
            await observer.close()
            return ws

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    self._log.warning(
                        "websocket_error",
                        observer=observer.name,
                        error=str(ws.exception()),
                    )
                    break
                # Push-only channel: inbound frames are ignored
        finally:
            await self._dispatcher.detach(observer, reason="disconnected")

        return ws

    async def _handle_health(self, request: web.Request) -> web.Response:
        try:
            if self._health_provider is None:
                return web.json_response(
                    {"status": "unknown", "error": "No health provider configured"},
                    status=503,
                )

            health_data = await self._health_provider()

            try:
                serves = HealthStatus(health_data.get("status")).serves_traffic
            except ValueError:
                serves = False
            status_code = 200 if serves else 503
            return web.json_response(health_data, status=status_code)

        except Exception as e:
            self._log.error("health_check_error", error=str(e))
            return web.json_response(
                {"status": "unhealthy", "error": str(e)},
                status=503,
            )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        try:
            if self._metrics_provider is None:
                return web.Response(
                    text="# No metrics provider configured\n",
                    content_type="text/plain",
                )

            return web.Response(
                text=self._metrics_provider().decode(),
                content_type="text/plain",
            )

        except Exception as e:
            self._log.error("metrics_error", error=str(e))
            return web.Response(
                text=f"# Error: {e}\n",
                content_type="text/plain",
                status=500,
            )
