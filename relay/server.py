"""Relay server: accepts telephony connections and runs one Bridge per call."""

import asyncio
from typing import Optional, Set

import structlog
import websockets
from websockets.asyncio.server import Server, ServerConnection

from relay.bridge import Bridge, BridgeSettings
from relay.broker import SessionBrokerClient, SessionEndpoint
from relay.config import RelayConfig
from relay.core.errors import BindError
from relay.core.transcoder import Transcoder, create_transcoder
from relay.transport.connection import (
    Connection,
    Side,
    WebSocketConnection,
    open_upstream,
)

logger = structlog.get_logger(__name__)


class RelayServer:
    """WebSocket server creating an independent Bridge for each connection.

    The set of live bridges exists only so shutdown can reach them; bridges
    share no state with each other.
    """

    def __init__(
        self,
        config: RelayConfig,
        broker: Optional[SessionBrokerClient] = None,
        transcoder: Optional[Transcoder] = None,
        bridge_settings: Optional[BridgeSettings] = None
    ) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration
            broker: Session broker (built from config if omitted)
            transcoder: Transcoder backend (built from config if omitted)
            bridge_settings: Per-call settings (built from config if omitted)
        """
        self._config = config
        self._broker = broker or SessionBrokerClient(
            api_key=config.vapi.api_key or "",
            assistant_id=config.vapi.assistant_id or "",
            base_url=config.vapi.base_url,
            sample_rate=config.audio.upstream_rate,
            timeout=config.vapi.broker_timeout,
        )
        self._transcoder = transcoder or create_transcoder(
            backend=config.audio.transcoder,
            timeout=config.audio.transcode_timeout,
            max_workers=config.audio.transcode_workers,
        )
        self._bridge_settings = bridge_settings or config.bridge_settings()

        self._server: Optional[Server] = None
        self._bridges: Set[Bridge] = set()
        self._handler_tasks: Set[asyncio.Task] = set()
        self._stopped = False

    @property
    def port(self) -> int:
        """Actual bound port (useful when configured with port 0)."""
        if self._server is None:
            raise RuntimeError("Server not started")
        return self._server.sockets[0].getsockname()[1]

    @property
    def active_calls(self) -> int:
        """Number of bridges currently running."""
        return len(self._bridges)

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            BindError: If the socket cannot be bound
        """
        host = self._config.server.host
        port = self._config.server.port
        try:
            self._server = await websockets.serve(
                self._handle,
                host,
                port,
                max_size=None,
            )
        except OSError as e:
            raise BindError(host, port, e) from e

        logger.info(
            "Relay listening",
            url=f"ws://{host}:{self.port}",
            transcoder=self._config.audio.transcoder
        )

    async def _open_upstream(self, endpoint: SessionEndpoint) -> Connection:
        return await open_upstream(
            endpoint.url,
            self._config.vapi.api_key or "",
            open_timeout=self._config.vapi.open_timeout,
        )

    async def _handle(self, ws: ServerConnection) -> None:
        downstream = WebSocketConnection(ws, Side.DOWNSTREAM)
        bridge = Bridge(
            downstream,
            self._broker,
            self._open_upstream,
            self._transcoder,
            self._bridge_settings,
        )
        logger.info(
            "Downstream connected",
            call_id=bridge.call_id,
            remote=downstream.remote_address
        )

        task = asyncio.current_task()
        if task is not None:
            self._handler_tasks.add(task)
        self._bridges.add(bridge)
        try:
            await bridge.run()
        except asyncio.CancelledError:
            logger.warning("Call handler cancelled", call_id=bridge.call_id)
            raise
        except Exception as e:
            logger.error(
                f"Bridge error: {type(e).__name__}: {e}",
                call_id=bridge.call_id,
                exc_info=True
            )
        finally:
            self._bridges.discard(bridge)
            if task is not None:
                self._handler_tasks.discard(task)

    async def shutdown(self) -> None:
        """Close every call, the listening socket and shared resources."""
        if self._stopped:
            return
        self._stopped = True

        if self._server is not None:
            # Stop accepting; bridges close their own connections
            self._server.close(close_connections=False)

        if self._bridges:
            logger.info("Closing active calls", count=len(self._bridges))
            for bridge in list(self._bridges):
                bridge.shutdown("relay shutting down")

        if self._handler_tasks:
            _, still_running = await asyncio.wait(
                set(self._handler_tasks),
                timeout=self._config.server.shutdown_grace
            )
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Force-cancelled calls on shutdown", count=len(still_running))

        if self._server is not None:
            await self._server.wait_closed()
            logger.info("Listening socket closed")

        try:
            await self._broker.aclose()
        except Exception as e:
            logger.error(f"Error closing broker client: {e}")

        try:
            await self._transcoder.close()
        except Exception as e:
            logger.error(f"Error closing transcoder: {e}")

        logger.info("Relay stopped")
