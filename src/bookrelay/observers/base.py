"""Observer protocol - any sink for outbound events."""

from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Observer(Protocol):
    """A sink that accepts normalized outbound events.

    ``send`` receives the wire dict (``OutboundEvent.to_dict()``). Raising
    from ``send`` tells the dispatcher the observer is broken and it gets
    detached. ``close`` must be safe to call more than once.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs and metrics."""
        ...

    @abstractmethod
    async def send(self, event: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
