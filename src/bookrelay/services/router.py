"""Topic router - maps bus messages to tagged inbound events."""

from typing import Any, Optional, Union

import orjson
import structlog

from bookrelay.core.errors import MalformedMessage
from bookrelay.domain.events import (
    DiscoveryEvent,
    HealthEvent,
    InboundEvent,
    OrderBookEvent,
    StatusEvent,
)
from bookrelay.domain.models import MarketOrderBook, NodeHealth

log = structlog.get_logger()

DEFAULT_HEALTH_PREFIX = "metrics:"
DEFAULT_STATUS_PREFIX = "market_status:"
DEFAULT_ORDERBOOK_CHANNEL = "orderbooks"
DEFAULT_DISCOVERY_CHANNEL = "market_discovery"

ORDERBOOK_MESSAGE_TYPE = "orderbook_update"


class TopicRouter:
    """Classifies (topic, payload) pairs and parses their payloads.

    ``route`` returns None for topics it does not know about. A known topic
    with a payload that is not a JSON object of the expected shape raises
    MalformedMessage.

    Usage:
        router = TopicRouter()
        event = router.route("metrics:10.0.0.1", b'{"cpuUsage": 50, ...}')
    """

    def __init__(
        self,
        health_prefix: str = DEFAULT_HEALTH_PREFIX,
        status_prefix: str = DEFAULT_STATUS_PREFIX,
        orderbook_channel: str = DEFAULT_ORDERBOOK_CHANNEL,
        discovery_channel: str = DEFAULT_DISCOVERY_CHANNEL,
    ) -> None:
        self.health_prefix = health_prefix
        self.status_prefix = status_prefix
        self.orderbook_channel = orderbook_channel
        self.discovery_channel = discovery_channel

    @property
    def patterns(self) -> list[str]:
        """Glob patterns to PSUBSCRIBE to."""
        return [f"{self.health_prefix}*", f"{self.status_prefix}*"]

    @property
    def channels(self) -> list[str]:
        """Exact channel names to SUBSCRIBE to."""
        return [self.orderbook_channel, self.discovery_channel]

    def family(self, topic: str) -> str:
        """Topic family name, used as a low-cardinality metrics label."""
        if topic.startswith(self.health_prefix):
            return "health"
        if topic.startswith(self.status_prefix):
            return "status"
        if topic == self.orderbook_channel:
            return "orderbook"
        if topic == self.discovery_channel:
            return "discovery"
        return "unknown"

    def route(self, topic: str, payload: Union[str, bytes]) -> Optional[InboundEvent]:
        """Turn a raw bus message into an inbound event.

        Args:
            topic: Channel the message arrived on.
            payload: Raw JSON text.

        Returns:
            The parsed event, or None if the topic is unrecognized or the
            message is of a kind the relay ignores.

        Raises:
            MalformedMessage: payload is not well-formed or has the wrong shape.
        """
        if topic.startswith(self.health_prefix):
            node_id = topic[len(self.health_prefix):]
            if not node_id:
                return None
            data = self._decode(topic, payload)
            return HealthEvent(node_id=node_id, health=self._parse(topic, NodeHealth.from_payload, data))

        if topic.startswith(self.status_prefix):
            event_id = topic[len(self.status_prefix):]
            if not event_id:
                return None
            data = self._decode(topic, payload)
            status = data.get("status")
            if not isinstance(status, str) or not status:
                raise MalformedMessage(topic, "status must be a non-empty string")
            return StatusEvent(event_id=event_id, status=status)

        if topic == self.orderbook_channel:
            data = self._decode(topic, payload)
            message_type = data.get("type", ORDERBOOK_MESSAGE_TYPE)
            if message_type != ORDERBOOK_MESSAGE_TYPE:
                log.debug("orderbook_message_ignored", topic=topic, message_type=message_type)
                return None
            return OrderBookEvent(book=self._parse(topic, MarketOrderBook.from_payload, data))

        if topic == self.discovery_channel:
            data = self._decode(topic, payload)
            total = data.get("totalMarkets")
            if isinstance(total, bool) or not isinstance(total, int) or total < 0:
                raise MalformedMessage(topic, "totalMarkets must be a non-negative integer")
            return DiscoveryEvent(total_markets=total)

        return None

    def _decode(self, topic: str, payload: Union[str, bytes]) -> dict[str, Any]:
        try:
            data = orjson.loads(payload)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise MalformedMessage(topic, "payload is not valid JSON", cause=e) from e
        if not isinstance(data, dict):
            raise MalformedMessage(topic, "payload must be a JSON object")
        return data

    def _parse(self, topic: str, parser: Any, data: dict[str, Any]) -> Any:
        try:
            return parser(data)
        except ValueError as e:
            raise MalformedMessage(topic, str(e), cause=e) from e
