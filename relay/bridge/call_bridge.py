"""Per-call bridge between the telephony leg and the assistant leg.

Data flow:
- Uplink: downstream frame -> (optional transcode) -> upstream, verbatim by default
- Downlink: upstream frame -> transcode (upstream rate -> downstream rate) -> downstream

Lifecycle: AWAITING_UPSTREAM -> ACTIVE -> CLOSING -> CLOSED. All state
transitions happen in ``run()``, which consumes a single event queue fed by
the connection readers, the upstream setup task and ``shutdown()``.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Union

import structlog

from relay.broker import SessionEndpoint
from relay.core.constants import AudioConstants, CloseCodes
from relay.core.errors import BrokerError, TranscodeError
from relay.core.ring_buffer import StreamBuffer
from relay.core.transcoder import Transcoder
from relay.transport.connection import (
    Connection,
    ConnectionEvent,
    ConnectionEventType,
    Side,
)

logger = structlog.get_logger(__name__)


class BridgeState(Enum):
    """Call session lifecycle states."""

    AWAITING_UPSTREAM = "awaiting_upstream"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class PendingAudioPolicy(Enum):
    """What to do with caller audio that arrives before the upstream is ready."""

    DROP = "drop"
    BUFFER = "buffer"


class BridgeEventType(Enum):
    """Bridge-internal control events."""

    UPSTREAM_READY = auto()
    UPSTREAM_FAILED = auto()
    TASK_FAILED = auto()
    IDLE_TIMEOUT = auto()
    SHUTDOWN = auto()


@dataclass
class BridgeEvent:
    """Bridge control event data."""

    type: BridgeEventType
    detail: Optional[str] = None


@dataclass
class BridgeSettings:
    """Per-call bridge configuration."""

    downstream_rate: int = AudioConstants.DOWNSTREAM_SAMPLE_RATE
    upstream_rate: int = AudioConstants.UPSTREAM_SAMPLE_RATE
    transcode_uplink: bool = False
    pending_policy: PendingAudioPolicy = PendingAudioPolicy.DROP
    pending_capacity: int = 50
    pipe_capacity: int = 200
    idle_timeout: Optional[float] = None
    failure_reason: str = "assistant session unavailable"

    def __post_init__(self) -> None:
        if self.downstream_rate <= 0 or self.upstream_rate <= 0:
            raise ValueError(
                f"Sample rates must be positive, got "
                f"{self.downstream_rate}/{self.upstream_rate}"
            )
        if self.pending_capacity <= 0:
            raise ValueError(f"Pending capacity must be positive, got {self.pending_capacity}")
        if self.pipe_capacity <= 0:
            raise ValueError(f"Pipe capacity must be positive, got {self.pipe_capacity}")
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError(f"Idle timeout must be positive, got {self.idle_timeout}")


@dataclass
class BridgeStats:
    """Per-call counters, logged when the session ends."""

    uplink_frames: int = 0
    uplink_bytes: int = 0
    downlink_frames: int = 0
    downlink_bytes: int = 0
    pending_dropped: int = 0
    pending_flushed: int = 0
    pipe_overflows: int = 0
    transcode_failures: int = 0
    discarded_on_close: int = 0
    opened_sides: List[str] = field(default_factory=list)


class SessionBroker(Protocol):
    """Anything that can issue a session endpoint for a new call."""

    async def request_session(self) -> SessionEndpoint:
        ...


UpstreamOpener = Callable[[SessionEndpoint], Awaitable[Connection]]

_Event = Union[ConnectionEvent, BridgeEvent]


class Bridge:
    """Owns one downstream and at most one upstream connection for a call."""

    def __init__(
        self,
        downstream: Connection,
        broker: SessionBroker,
        open_upstream: UpstreamOpener,
        transcoder: Transcoder,
        settings: Optional[BridgeSettings] = None,
        call_id: Optional[str] = None
    ) -> None:
        """Initialize bridge.

        Args:
            downstream: Accepted telephony connection (already open)
            broker: Session broker used once to obtain the upstream URL
            open_upstream: Coroutine factory opening the upstream connection
            transcoder: Sample-rate converter shared across calls
            settings: Bridge configuration
            call_id: Identifier used in logs (generated if omitted)
        """
        self.call_id = call_id or uuid.uuid4().hex[:12]
        self._downstream = downstream
        self._upstream: Optional[Connection] = None
        self._broker = broker
        self._open_upstream = open_upstream
        self._transcoder = transcoder
        self._settings = settings or BridgeSettings()

        self._state = BridgeState.AWAITING_UPSTREAM
        self._started = False
        self._close_reason: Optional[str] = None
        self._close_code = CloseCodes.NORMAL
        self._downstream_close_reason = ""

        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._pending: Deque[bytes] = deque()
        self._uplink = StreamBuffer(self._settings.pipe_capacity)
        self._downlink = StreamBuffer(self._settings.pipe_capacity)

        self._tasks: List[asyncio.Task[None]] = []
        self._closed = asyncio.Event()

        self._stats = BridgeStats()
        self._logger = logger.bind(call_id=self.call_id)

    @property
    def state(self) -> BridgeState:
        """Current lifecycle state."""
        return self._state

    @property
    def upstream(self) -> Optional[Connection]:
        """Upstream connection, once established."""
        return self._upstream

    @property
    def close_reason(self) -> Optional[str]:
        """Why the session started closing."""
        return self._close_reason

    def stats(self) -> dict:
        """Get session statistics.

        Returns:
            Statistics dictionary
        """
        data = asdict(self._stats)
        data["state"] = self._state.value
        data["close_reason"] = self._close_reason
        return data

    async def run(self) -> None:
        """Drive the call session until it reaches CLOSED.

        Raises:
            RuntimeError: If the bridge was already run
        """
        if self._started:
            raise RuntimeError("Bridge can only be run once")
        self._started = True

        self._logger.info(
            "Call session started",
            downstream_rate=self._settings.downstream_rate,
            upstream_rate=self._settings.upstream_rate,
            pending_policy=self._settings.pending_policy.value
        )

        self._spawn(self._read(self._downstream), "downstream-reader")
        self._spawn(self._establish_upstream(), "establish-upstream")

        try:
            while self._state in (BridgeState.AWAITING_UPSTREAM, BridgeState.ACTIVE):
                event = await self._next_event()
                self._dispatch(event)
        finally:
            await self._teardown()

    def shutdown(self, reason: str = "shutdown") -> None:
        """Request the session to close. Safe in any state."""
        if self._state is BridgeState.CLOSED:
            return
        self._events.put_nowait(BridgeEvent(BridgeEventType.SHUTDOWN, detail=reason))

    async def wait_closed(self) -> None:
        """Wait until the session reaches CLOSED."""
        await self._closed.wait()

    # Event loop

    async def _next_event(self) -> _Event:
        idle_timeout = self._settings.idle_timeout
        if self._state is not BridgeState.ACTIVE or not idle_timeout:
            return await self._events.get()

        try:
            async with asyncio.timeout(idle_timeout):
                return await self._events.get()
        except TimeoutError:
            return BridgeEvent(
                BridgeEventType.IDLE_TIMEOUT,
                detail=f"no audio for {idle_timeout}s"
            )

    def _dispatch(self, event: _Event) -> None:
        if isinstance(event, BridgeEvent):
            self._on_control(event)
        elif event.type is ConnectionEventType.OPENED:
            self._stats.opened_sides.append(event.side.value)
            self._logger.debug("Connection opened", side=event.side.value, peer=event.detail)
        elif event.type is ConnectionEventType.FRAME_RECEIVED:
            if event.side is Side.DOWNSTREAM:
                self._on_downstream_frame(event.frame or b"")
            else:
                self._on_upstream_frame(event.frame or b"")
        elif event.is_terminal:
            errored = event.type is ConnectionEventType.ERRORED
            self._begin_closing(
                f"{event.side.value} {'errored' if errored else 'closed'}",
                detail=event.detail,
                failure=errored
            )

    def _on_control(self, event: BridgeEvent) -> None:
        if event.type is BridgeEventType.UPSTREAM_READY:
            self._activate()
        elif event.type is BridgeEventType.UPSTREAM_FAILED:
            self._close_code = CloseCodes.INTERNAL_ERROR
            self._downstream_close_reason = self._settings.failure_reason
            self._begin_closing("upstream unavailable", detail=event.detail, failure=True)
        elif event.type is BridgeEventType.SHUTDOWN:
            self._close_code = CloseCodes.GOING_AWAY
            self._begin_closing(event.detail or "shutdown")
        elif event.type is BridgeEventType.IDLE_TIMEOUT:
            self._begin_closing("idle timeout", detail=event.detail)
        elif event.type is BridgeEventType.TASK_FAILED:
            self._close_code = CloseCodes.INTERNAL_ERROR
            self._begin_closing("internal error", detail=event.detail, failure=True)

    def _on_downstream_frame(self, frame: bytes) -> None:
        if self._state is BridgeState.ACTIVE:
            self._enqueue(self._uplink, frame, "uplink")
            return

        if self._settings.pending_policy is PendingAudioPolicy.BUFFER:
            if len(self._pending) >= self._settings.pending_capacity:
                self._pending.popleft()
                self._stats.pending_dropped += 1
                self._logger.warning(
                    "Pending buffer full, evicting oldest caller frame",
                    direction="uplink",
                    capacity=self._settings.pending_capacity,
                    dropped=self._stats.pending_dropped
                )
            self._pending.append(frame)
            return

        self._stats.pending_dropped += 1
        if self._stats.pending_dropped % AudioConstants.LOG_INTERVAL_DROPS == 1:
            self._logger.warning(
                "Dropping caller audio, upstream not ready",
                direction="uplink",
                frame_bytes=len(frame),
                dropped=self._stats.pending_dropped
            )

    def _on_upstream_frame(self, frame: bytes) -> None:
        if self._state is BridgeState.ACTIVE:
            self._enqueue(self._downlink, frame, "downlink")

    def _enqueue(self, pipe: StreamBuffer, frame: bytes, direction: str) -> None:
        try:
            pipe.send_nowait(frame)
        except asyncio.QueueFull:
            self._stats.pipe_overflows += 1
            self._logger.debug(
                "Pipe full, dropping frame",
                direction=direction,
                capacity=pipe.capacity
            )

    # Transitions

    def _activate(self) -> None:
        upstream = self._upstream
        if upstream is None or self._state is not BridgeState.AWAITING_UPSTREAM:
            return

        self._state = BridgeState.ACTIVE
        self._spawn(self._read(upstream), "upstream-reader")

        uplink_to = self._settings.upstream_rate if self._settings.transcode_uplink else None
        self._spawn(
            self._pipe(self._uplink, upstream, self._settings.downstream_rate, uplink_to, "uplink"),
            "uplink"
        )
        self._spawn(
            self._pipe(
                self._downlink,
                self._downstream,
                self._settings.upstream_rate,
                self._settings.downstream_rate,
                "downlink"
            ),
            "downlink"
        )

        flushed = len(self._pending)
        while self._pending:
            self._enqueue(self._uplink, self._pending.popleft(), "uplink")
        self._stats.pending_flushed += flushed

        self._logger.info(
            "Bridge active",
            flushed_frames=flushed,
            dropped_before_ready=self._stats.pending_dropped
        )

    def _begin_closing(
        self,
        reason: str,
        detail: Optional[str] = None,
        failure: bool = False
    ) -> None:
        if self._state in (BridgeState.CLOSING, BridgeState.CLOSED):
            return

        previous = self._state
        self._state = BridgeState.CLOSING
        self._close_reason = reason

        discarded = self._uplink.close() + self._downlink.close() + len(self._pending)
        self._pending.clear()
        self._stats.discarded_on_close += discarded

        log = self._logger.warning if failure else self._logger.info
        log(
            "Call session closing",
            reason=reason,
            detail=detail,
            previous_state=previous.value,
            discarded_frames=discarded
        )

    async def _teardown(self) -> None:
        if self._state is not BridgeState.CLOSING:
            self._begin_closing("bridge stopped")

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._upstream is not None:
            await self._close_connection(self._upstream, self._close_code, "")
        await self._close_connection(
            self._downstream,
            self._close_code,
            self._downstream_close_reason
        )

        self._state = BridgeState.CLOSED
        self._closed.set()
        self._logger.info("Call session closed", **self.stats())

    async def _close_connection(self, conn: Connection, code: int, reason: str) -> None:
        try:
            await conn.close(code=code, reason=reason)
        except Exception as e:
            self._logger.error(
                f"Error closing {conn.side.value} connection: {e}",
                side=conn.side.value
            )

    # Tasks

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"bridge-{self.call_id}-{name}")
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)
        return task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self._logger.error(
            f"Bridge task failed: {type(exc).__name__}: {exc}",
            task=task.get_name(),
            exc_info=exc
        )
        self._events.put_nowait(
            BridgeEvent(BridgeEventType.TASK_FAILED, detail=task.get_name())
        )

    async def _read(self, conn: Connection) -> None:
        """Forward connection events into the session queue."""
        async for event in conn.events():
            self._events.put_nowait(event)
            if event.is_terminal:
                return

        self._events.put_nowait(
            ConnectionEvent(
                type=ConnectionEventType.CLOSED,
                side=conn.side,
                detail="event stream ended"
            )
        )

    async def _establish_upstream(self) -> None:
        try:
            endpoint = await self._broker.request_session()
        except BrokerError as e:
            self._logger.error("Session broker failed", error=str(e), payload=e.payload)
            self._events.put_nowait(
                BridgeEvent(BridgeEventType.UPSTREAM_FAILED, detail=f"broker: {e}")
            )
            return

        try:
            upstream = await self._open_upstream(endpoint)
        except ConnectionError as e:
            self._logger.error("Upstream connection failed", error=str(e))
            self._events.put_nowait(
                BridgeEvent(BridgeEventType.UPSTREAM_FAILED, detail=f"connect: {e}")
            )
            return

        self._upstream = upstream
        self._events.put_nowait(BridgeEvent(BridgeEventType.UPSTREAM_READY))

    async def _pipe(
        self,
        source: StreamBuffer,
        target: Connection,
        from_rate: int,
        to_rate: Optional[int],
        direction: str
    ) -> None:
        """Move frames from one pipe buffer to a connection, in order."""
        while True:
            frame = await source.receive()

            if to_rate is not None:
                try:
                    frame = await self._transcoder.resample(frame, from_rate, to_rate)
                except TranscodeError as e:
                    self._stats.transcode_failures += 1
                    self._logger.warning(
                        "Transcode failed, dropping frame",
                        direction=direction,
                        error=str(e),
                        failures=self._stats.transcode_failures
                    )
                    continue

            if self._state is not BridgeState.ACTIVE:
                self._stats.discarded_on_close += 1
                self._logger.debug("Discarding frame after close", direction=direction)
                return

            if not frame or not await target.send(frame):
                continue

            if direction == "uplink":
                self._stats.uplink_frames += 1
                self._stats.uplink_bytes += len(frame)
                count = self._stats.uplink_frames
            else:
                self._stats.downlink_frames += 1
                self._stats.downlink_bytes += len(frame)
                count = self._stats.downlink_frames

            if count % AudioConstants.LOG_INTERVAL_FRAMES == 0:
                self._logger.info("Frames relayed", direction=direction, count=count)
