"""Observers - sinks that receive the relay's outbound events."""

from bookrelay.observers.base import Observer
from bookrelay.observers.terminal import TerminalObserver, format_event, node_role
from bookrelay.observers.websocket import RelayServer, WebSocketObserver

__all__ = [
    "Observer",
    "WebSocketObserver",
    "RelayServer",
    "TerminalObserver",
    "format_event",
    "node_role",
]
