"""
Redis pub/sub subscriber feeding the relay.

Connects once with a finite timeout and no automatic retry; a failed connect
raises TransportUnavailable so the caller can fall back to degraded mode.
Messages are handed to a single handler one at a time, in receive order.
Payloads stay raw bytes; only channel names are decoded, so a payload that
is not UTF-8 reaches the router and is rejected there like any bad JSON.
"""
import asyncio
from typing import Any, Callable, Coroutine, Optional, Sequence, Union

import redis.asyncio as redis
import structlog
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from bookrelay.core.errors import TransportUnavailable

log = structlog.get_logger()

MessageHandler = Callable[[str, Any], Coroutine[Any, Any, None]]


def _channel_name(channel: Union[str, bytes]) -> str:
    if isinstance(channel, bytes):
        return channel.decode("utf-8", errors="replace")
    return channel


class BusSubscriber:
    """Redis-backed subscriber for the relay's topics.

    Usage:
        bus = BusSubscriber(
            redis_url="redis://localhost:6379",
            patterns=["metrics:*", "market_status:*"],
            channels=["orderbooks", "market_discovery"],
        )
        await bus.connect()
        await bus.start(relay.handle_message)
        ...
        await bus.stop_listening()
        await bus.disconnect()
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        patterns: Sequence[str] = (),
        channels: Sequence[str] = (),
        connect_timeout: float = 5.0,
    ) -> None:
        """Initialize BusSubscriber.

        Args:
            redis_url: Redis connection URL
            patterns: Glob patterns subscribed with PSUBSCRIBE
            channels: Exact channel names subscribed with SUBSCRIBE
            connect_timeout: Seconds to wait for the initial connection
        """
        self._redis_url = redis_url
        self._patterns = list(patterns)
        self._channels = list(channels)
        self._connect_timeout = connect_timeout
        self._redis: Optional[redis.Redis] = None
        self._pubsub: Optional[redis.client.PubSub] = None
        self._handler: Optional[MessageHandler] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._running = False
        self._log = log.bind(component="bus", url=redis_url)

    @property
    def is_connected(self) -> bool:
        """Check if connected to Redis."""
        return self._redis is not None

    @property
    def is_listening(self) -> bool:
        return self._running

    async def connect(self) -> None:
        """Establish the Redis connection.

        Raises:
            TransportUnavailable: Redis could not be reached within the timeout.
        """
        client = redis.from_url(
            self._redis_url,
            decode_responses=False,
            socket_connect_timeout=self._connect_timeout,
            retry=Retry(NoBackoff(), 0),
        )
        try:
            await asyncio.wait_for(client.ping(), timeout=self._connect_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            await client.aclose()
            self._log.warning("bus_connect_failed", error=str(e))
            raise TransportUnavailable(self._redis_url, cause=e) from e

        self._redis = client
        self._pubsub = client.pubsub()
        self._log.info("bus_connected")

    async def start(self, handler: MessageHandler) -> None:
        """Subscribe to all topics and start delivering messages to handler.

        Raises:
            TransportUnavailable: a subscribe failed; the connection is closed.
        """
        if not self._pubsub:
            raise RuntimeError("BusSubscriber not connected")

        self._handler = handler
        try:
            if self._patterns:
                await self._pubsub.psubscribe(*self._patterns)
            if self._channels:
                await self._pubsub.subscribe(*self._channels)
        except (RedisError, OSError) as e:
            self._log.warning("bus_subscribe_failed", error=str(e))
            await self._close_client()
            raise TransportUnavailable(self._redis_url, cause=e) from e

        self._running = True
        self._listener_task = asyncio.create_task(self._listen_loop())
        self._log.info(
            "bus_subscriptions_active",
            patterns=self._patterns,
            channels=self._channels,
        )

    async def stop_listening(self) -> None:
        """Stop handing messages to the handler. The connection stays open."""
        self._running = False
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        self._log.info("bus_intake_stopped")

    async def disconnect(self) -> None:
        """Unsubscribe and close the Redis connection."""
        await self.stop_listening()
        if self._pubsub:
            try:
                if self._patterns:
                    await self._pubsub.punsubscribe()
                if self._channels:
                    await self._pubsub.unsubscribe()
            except (RedisError, OSError) as e:
                self._log.warning("bus_unsubscribe_failed", error=str(e))
        await self._close_client()
        self._log.info("bus_disconnected")

    async def _close_client(self) -> None:
        if self._pubsub:
            await self._pubsub.aclose()
        if self._redis:
            await self._redis.aclose()
        self._redis = None
        self._pubsub = None

    async def _listen_loop(self) -> None:
        """Main loop for processing incoming messages."""
        if not self._pubsub or not self._handler:
            return

        try:
            async for message in self._pubsub.listen():
                if not self._running:
                    break

                if message["type"] not in ("message", "pmessage"):
                    continue

                channel = _channel_name(message.get("channel", b""))
                try:
                    await self._handler(channel, message["data"])
                except Exception as e:
                    # The handler owns per-message error handling; anything that
                    # escapes is logged so the loop keeps consuming.
                    self._log.error("bus_handler_error", channel=channel, error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._running = False
            self._log.error("bus_listener_failed", error=str(e), error_type=type(e).__name__)
