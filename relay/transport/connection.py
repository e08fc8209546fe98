"""Streaming connections carrying raw PCM frames.

A ``Connection`` is one leg of a call: the telephony side (downstream) or
the voice-assistant side (upstream). Received traffic is surfaced as a
stream of ``ConnectionEvent`` objects that starts with ``OPENED`` and ends
with exactly one terminal ``CLOSED`` or ``ERRORED`` event.
"""

import time
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import AsyncIterator, Optional, Protocol, Union, runtime_checkable

import structlog
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
from websockets.protocol import State

from relay.core.constants import CloseCodes

logger = structlog.get_logger(__name__)


class Side(Enum):
    """Which leg of the call a connection belongs to."""

    DOWNSTREAM = "downstream"
    UPSTREAM = "upstream"


class ConnectionEventType(Enum):
    """Connection event types."""

    OPENED = auto()
    FRAME_RECEIVED = auto()
    CLOSED = auto()
    ERRORED = auto()


@dataclass
class ConnectionEvent:
    """Connection event data."""

    type: ConnectionEventType
    side: Side
    frame: Optional[bytes] = None
    detail: Optional[str] = None
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        """Whether no further events follow this one."""
        return self.type in (ConnectionEventType.CLOSED, ConnectionEventType.ERRORED)


@runtime_checkable
class Connection(Protocol):
    """Protocol for one leg of a relayed call."""

    side: Side

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the connection can carry frames."""
        ...

    @abstractmethod
    async def send(self, frame: bytes) -> bool:
        """Send a binary frame.

        Sending on a connection that is not open is a logged no-op.

        Args:
            frame: Raw PCM bytes

        Returns:
            True if the frame was handed to the transport
        """
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[ConnectionEvent]:
        """Iterate over OPENED, received frames and the terminal close/error event."""
        ...

    @abstractmethod
    async def close(self, code: int = CloseCodes.NORMAL, reason: str = "") -> None:
        """Close the connection. Safe to call repeatedly."""
        ...


WebSocket = Union[ServerConnection, ClientConnection]


class WebSocketConnection:
    """Connection backed by a ``websockets`` client or server connection."""

    def __init__(self, ws: WebSocket, side: Side) -> None:
        """Initialize connection wrapper.

        Args:
            ws: Open websockets connection
            side: Which leg of the call this is
        """
        self._ws = ws
        self.side = side
        self._closing = False
        self._dropped_sends = 0
        self._logger = logger.bind(side=side.value)

    @property
    def is_open(self) -> bool:
        return not self._closing and self._ws.state is State.OPEN

    @property
    def remote_address(self) -> Optional[str]:
        """Peer address as host:port, if known."""
        address = self._ws.remote_address
        if not address:
            return None
        return f"{address[0]}:{address[1]}"

    async def send(self, frame: bytes) -> bool:
        if not self.is_open:
            self._dropped_sends += 1
            self._logger.debug(
                "Send on closed connection ignored",
                frame_bytes=len(frame),
                dropped_sends=self._dropped_sends
            )
            return False

        try:
            await self._ws.send(frame)
            return True
        except ConnectionClosed as e:
            self._dropped_sends += 1
            self._logger.debug(
                "Peer closed during send",
                frame_bytes=len(frame),
                code=e.rcvd.code if e.rcvd else None
            )
            return False

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        yield ConnectionEvent(
            type=ConnectionEventType.OPENED,
            side=self.side,
            detail=self.remote_address
        )
        try:
            async for message in self._ws:
                if isinstance(message, str):
                    self._logger.debug("Ignoring text message", preview=message[:200])
                    continue
                yield ConnectionEvent(
                    type=ConnectionEventType.FRAME_RECEIVED,
                    side=self.side,
                    frame=message
                )
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            yield ConnectionEvent(
                type=ConnectionEventType.ERRORED,
                side=self.side,
                detail=f"abnormal close: {e}"
            )
            return
        except Exception as e:
            yield ConnectionEvent(
                type=ConnectionEventType.ERRORED,
                side=self.side,
                detail=f"{type(e).__name__}: {e}"
            )
            return

        yield ConnectionEvent(
            type=ConnectionEventType.CLOSED,
            side=self.side,
            detail=self._close_detail()
        )

    def _close_detail(self) -> Optional[str]:
        rcvd = self._ws.close_code
        if rcvd is None:
            return None
        reason = self._ws.close_reason
        return f"code={rcvd}" + (f" reason={reason}" if reason else "")

    async def close(self, code: int = CloseCodes.NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        await self._ws.close(code=code, reason=reason)
        self._logger.debug("Connection closed", code=code, reason=reason or None)


async def open_upstream(
    url: str,
    api_key: str,
    open_timeout: float = 10.0
) -> WebSocketConnection:
    """Open the assistant-side connection for one call.

    Args:
        url: Single-use session URL issued by the broker
        api_key: Provider API key sent as a bearer token
        open_timeout: Handshake timeout in seconds

    Returns:
        Open upstream connection

    Raises:
        ConnectionError: If the handshake fails or times out
    """
    try:
        ws = await websockets.connect(
            url,
            additional_headers={"Authorization": f"Bearer {api_key}"},
            open_timeout=open_timeout,
            max_size=None,
        )
    except Exception as e:
        raise ConnectionError(f"Failed to open upstream connection: {e}") from e

    logger.info("Upstream connected")
    return WebSocketConnection(ws, Side.UPSTREAM)
