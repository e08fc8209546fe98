"""Streaming transport for the downstream and upstream legs."""

__all__ = [
    "Connection",
    "ConnectionEvent",
    "ConnectionEventType",
    "Side",
    "WebSocketConnection",
    "open_upstream",
]

from relay.transport.connection import (
    Connection,
    ConnectionEvent,
    ConnectionEventType,
    Side,
    WebSocketConnection,
    open_upstream,
)
