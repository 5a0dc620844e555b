"""
WebSocket transport for the feed gateway.

Handles WebSocket lifecycle including:
- Connection establishment with timeout
- Serialized outbound writes
- Decoding inbound text frames
- Reporting unexpected closure to the owner

There is no reconnection here. A lost transport is reported through
`on_close` and the owner decides what to do next.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import aiohttp

from quotestream.feed import codec
from quotestream.feed.config import FeedConfig
from quotestream.feed.errors import MessageParseError, TransportClosedError
from quotestream.feed.types import ConnectionMetrics, ConnectionState
from quotestream.types.aliases import Frame

logger = logging.getLogger(__name__)


class FeedConnection:
    """
    Manages a single WebSocket connection to the feed gateway.

    The connection decodes JSON frames but does not interpret them; the
    owner's `on_frame` callback does that.

    Usage:
        async def on_frame(frame: dict) -> None:
            print(f"Received: {frame}")

        connection = FeedConnection(
            url="wss://gateway.example.com/realtime",
            config=FeedConfig(),
            on_frame=on_frame,
        )
        await connection.open()
        await connection.send({"type": "KEEPALIVE", "channel": 0})
        # ... later ...
        await connection.close()
    """

    def __init__(
        self,
        url: str,
        config: FeedConfig,
        on_frame: Callable[[Frame], Awaitable[None]],
        on_close: Optional[Callable[[TransportClosedError], Awaitable[None]]] = None,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "connection",
    ) -> None:
        """
        Initialize the connection.

        Args:
            url: Gateway WebSocket URL
            config: Feed configuration (connect timeout)
            on_frame: Async callback for each decoded inbound frame
            on_close: Async callback when the server or network drops the socket
            session: Optional shared HTTP session; one is created when omitted
            name: Name for logging purposes
        """
        self._url = url
        self._config = config
        self._on_frame = on_frame
        self._on_close = on_close
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._write_lock = asyncio.Lock()

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def url(self) -> str:
        return self._url

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    @property
    def connected_since(self) -> Optional[datetime]:
        return self._connected_at

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    async def open(self) -> None:
        """
        Open the WebSocket.

        Raises:
            TransportClosedError: If the socket cannot be opened in time
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.warning(f"[{self._name}] Already connected or connecting")
            return

        self._set_state(ConnectionState.CONNECTING)

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        logger.info(f"[{self._name}] Connecting to {self._url}")
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._url, autoping=True),
                timeout=self._config.connect_timeout_s,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self._metrics.errors += 1
            self._set_state(ConnectionState.DISCONNECTED)
            await self._release_session()
            raise TransportClosedError(
                f"Failed to open feed connection: {e!r}",
                url=self._url,
                reason=type(e).__name__,
                component="FeedConnection",
            ) from e

        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"[{self._name}] Connected successfully")

        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"{self._name}_receive"
        )

    async def send(self, frame: Frame) -> bool:
        """
        Write one frame.

        Returns:
            False if the frame was dropped because the socket is not open
        """
        async with self._write_lock:
            ws = self._ws
            if ws is None or ws.closed or self._state != ConnectionState.CONNECTED:
                self._metrics.sends_dropped += 1
                logger.debug(f"[{self._name}] Dropped {frame.get('type')} (not connected)")
                return False

            try:
                await ws.send_str(codec.encode(frame))
            except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
                self._metrics.sends_dropped += 1
                self._metrics.errors += 1
                logger.warning(f"[{self._name}] Send failed for {frame.get('type')}: {e}")
                return False

            self._metrics.messages_sent += 1
            return True

    async def _receive_loop(self) -> None:
        """Main loop for receiving WebSocket messages."""
        ws = self._ws
        if ws is None:
            return

        reason = "closed by server"
        try:
            async for msg in ws:
                self._metrics.last_message_at = time.monotonic()
                self._metrics.messages_received += 1

                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._metrics.bytes_received += len(msg.data)
                    try:
                        frame = codec.decode(msg.data)
                    except MessageParseError as e:
                        self._metrics.parse_errors += 1
                        logger.warning(f"[{self._name}] Dropping undecodable frame: {e}")
                        continue

                    try:
                        await self._on_frame(frame)
                    except Exception as e:
                        logger.error(f"[{self._name}] Message handling error: {e}", exc_info=True)
                        self._metrics.errors += 1

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(f"[{self._name}] Received binary message (ignored)")

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"websocket error: {ws.exception()}"
                    logger.error(f"[{self._name}] WebSocket error: {ws.exception()}")
                    self._metrics.errors += 1
                    break

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            reason = f"receive error: {e!r}"
            logger.error(f"[{self._name}] Receive loop error: {e}")
            self._metrics.errors += 1

        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return

        logger.warning(f"[{self._name}] Connection lost ({reason})")
        self._set_state(ConnectionState.DISCONNECTED)

        if self._on_close:
            error = TransportClosedError(
                "Feed connection lost",
                url=self._url,
                reason=reason,
                component="FeedConnection",
            )
            try:
                await self._on_close(error)
            except Exception as cb_err:
                logger.warning(f"[{self._name}] Close callback failed: {cb_err}")

    async def close(self) -> None:
        """Close the connection gracefully. Idempotent, and safe from `on_frame`/`on_close`."""
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return

        logger.info(f"[{self._name}] Closing connection")
        self._set_state(ConnectionState.CLOSING)

        task = self._receive_task
        self._receive_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()

        await self._release_session()
        self._set_state(ConnectionState.CLOSED)
        logger.info(f"[{self._name}] Connection closed")

    async def _release_session(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None
