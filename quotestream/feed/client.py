"""
Streaming market-data client - top-level orchestration.

Coordinates all feed components:
- StreamingTokenClient for the credential exchange
- FeedConnection for the WebSocket
- HandshakeStateMachine for SETUP/AUTH/CHANNEL/FEED negotiation
- SubscriptionManager and SymbolResolver for the watch-list
- FeedDataNormalizer for COMPACT event decoding
- KeepaliveLoop for the control channel
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

import aiohttp

from quotestream.feed import codec
from quotestream.feed.config import StreamClientConfig
from quotestream.feed.connection import FeedConnection
from quotestream.feed.errors import (
    HandshakeTimeoutError,
    MessageParseError,
    StreamError,
    TransportClosedError,
)
from quotestream.feed.handshake import HandshakeStateMachine
from quotestream.feed.keepalive import KeepaliveLoop
from quotestream.feed.normalizer import FeedDataNormalizer, Record
from quotestream.feed.resolver import SymbolResolver
from quotestream.feed.subscriptions import SubscriptionManager
from quotestream.feed.tokens import StreamingTokenClient
from quotestream.feed.types import MessageType, StreamSession, StreamState, SymbolState
from quotestream.types.aliases import Frame, Period, Symbol
from quotestream.types.types import CandleRecord, Quote

logger = logging.getLogger(__name__)

QuoteCallback = Callable[[Quote], Awaitable[None]]
CandleCallback = Callable[[CandleRecord], Awaitable[None]]
TransportClosedCallback = Callable[[TransportClosedError], Awaitable[None]]
ConnectionFactory = Callable[..., FeedConnection]


class MarketDataStream:
    """
    Live quotes and candles for a changing set of symbols.

    One instance is one session. Inbound frame handling, subscription changes
    and state seeding are serialized by one lock; callbacks run after it is
    released, so they may call back into the stream (including `disconnect`).

    State Machine:
        [DISCONNECTED] --connect()--> [CONNECTING] --handshake--> ... --> [STREAMING]
              ^                                                              |
              +------------------------ disconnect() ------------------------+
        transport loss --> [CLOSED] (on_transport_closed fires; connect() may be called again)

    Usage:
        stream = MarketDataStream(session_token)
        stream.on_quote(handle_quote)
        await stream.connect(["AAPL", "MSFT"])
        await stream.update_symbols(["AAPL", "NVDA"])
        await stream.subscribe_to_candles("AAPL", "5m")
        ...
        await stream.disconnect()
    """

    def __init__(
        self,
        session_token: str,
        config: Optional[StreamClientConfig] = None,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        connection_factory: ConnectionFactory = FeedConnection,
        name: str = "stream",
    ) -> None:
        """
        Initialize the stream.

        Args:
            session_token: Caller's API session token
            config: Client configuration (defaults apply when omitted)
            http_session: Shared HTTP session; one is created per connection when omitted
            connection_factory: Builds the transport; called with keyword arguments
                url, config, on_frame, on_close, session, name
            name: Name for logging purposes
        """
        self._session_token = session_token
        self._config = config or StreamClientConfig()
        self._connection_factory = connection_factory
        self._name = name

        self._http = http_session
        self._owns_http = http_session is None

        self._lock = asyncio.Lock()
        self._state = StreamState.DISCONNECTED
        self._session: Optional[StreamSession] = None
        self._subscriptions: Optional[SubscriptionManager] = None
        self._normalizer = FeedDataNormalizer(
            symbol_for=self._to_symbol,
            candle_key=self._candle_key,
            name=f"{name}.normalizer",
        )

        self._acknowledged_event = asyncio.Event()  # FEED_CONFIG received
        self._subscribed_event = asyncio.Event()  # initial FEED_SUBSCRIPTION sent
        self._connect_error: Optional[TransportClosedError] = None
        self._closing = False

        # Callbacks, single slot each
        self._quote_callback: Optional[QuoteCallback] = None
        self._candle_callback: Optional[CandleCallback] = None
        self._closed_callback: Optional[TransportClosedCallback] = None

        # Stats
        self._started_at: Optional[datetime] = None
        self._quotes_emitted = 0
        self._candles_emitted = 0
        self._callback_errors = 0
        self._frames_ignored = 0

    # --- Properties ---

    @property
    def state(self) -> StreamState:
        if self._session is not None:
            return self._session.handshake.state
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self.state == StreamState.STREAMING

    @property
    def subscribed_symbols(self) -> tuple[Symbol, ...]:
        if self._subscriptions is None:
            return ()
        return self._subscriptions.desired

    @property
    def config(self) -> StreamClientConfig:
        return self._config

    def get_symbol_state(self, symbol: Symbol) -> Optional[SymbolState]:
        return self._normalizer.get_state(symbol)

    # --- Callback registration ---

    def on_quote(self, callback: Optional[QuoteCallback]) -> None:
        """Register the quote callback, replacing any previous one."""
        self._quote_callback = callback

    def on_candle(self, callback: Optional[CandleCallback]) -> None:
        """Register the candle callback, replacing any previous one."""
        self._candle_callback = callback

    def on_transport_closed(self, callback: Optional[TransportClosedCallback]) -> None:
        """Register the callback fired when an established stream loses its transport."""
        self._closed_callback = callback

    # --- Lifecycle ---

    async def connect(self, symbols: Iterable[Symbol]) -> None:
        """
        Fetch a streaming token, open the transport and run the handshake.

        Returns once the stream is STREAMING and the initial subscription is sent.

        Raises:
            NotEntitledError: Account is not entitled to streaming quotes
            TokenExchangeError: Streaming token could not be fetched
            TransportClosedError: Transport failed to open or dropped during the handshake
            HandshakeTimeoutError: Handshake did not finish within handshake_timeout_s
        """
        if self._session is not None:
            logger.warning(f"[{self._name}] Cannot connect from state: {self.state.value}")
            return

        wanted = list(symbols)
        feed_config = self._config.feed
        logger.info(f"[{self._name}] Connecting with {len(wanted)} symbols...")

        self._state = StreamState.CONNECTING
        self._acknowledged_event.clear()
        self._subscribed_event.clear()
        self._connect_error = None

        http = self._ensure_http()
        try:
            credential = await StreamingTokenClient(
                http, self._config.api, self._session_token, name=f"{self._name}.tokens"
            ).fetch()
        except StreamError:
            self._state = StreamState.DISCONNECTED
            await self._release_http()
            raise

        resolver = SymbolResolver(
            http, self._config.api, self._session_token, name=f"{self._name}.resolver"
        )
        subscriptions = SubscriptionManager(
            resolver, self._send, feed_config, name=f"{self._name}.subscriptions"
        )
        subscriptions.replace(wanted)
        self._subscriptions = subscriptions

        connection = self._connection_factory(
            url=credential.gateway_url,
            config=feed_config,
            on_frame=self._on_frame,
            on_close=self._on_transport_lost,
            session=http,
            name=f"{self._name}.connection",
        )
        handshake = HandshakeStateMachine(
            feed_config,
            credential.token,
            connection.send,
            self._on_handshake_complete,
            name=f"{self._name}.handshake",
        )
        keepalive = KeepaliveLoop(
            connection.send,
            feed_config.keepalive_interval_s,
            is_alive=lambda: connection.is_open and handshake.authorized,
            name=f"{self._name}.keepalive",
        )
        self._session = StreamSession(
            credential=credential,
            connection=connection,
            handshake=handshake,
            keepalive=keepalive,
        )

        try:
            await connection.open()
            async with self._lock:
                await handshake.start()
            await asyncio.wait_for(
                self._acknowledged_event.wait(), timeout=feed_config.handshake_timeout_s
            )
            # Symbol lookups for the initial subscription are bounded by request_timeout_s
            await self._subscribed_event.wait()
        except asyncio.TimeoutError as e:
            stalled_in = handshake.state.value
            logger.error(f"[{self._name}] Handshake stalled in {stalled_in}")
            await self._teardown(clear_symbol_state=False, final_state=StreamState.DISCONNECTED)
            raise HandshakeTimeoutError(
                f"Handshake did not complete within {feed_config.handshake_timeout_s}s",
                state=stalled_in,
                timeout_s=feed_config.handshake_timeout_s,
                component="MarketDataStream",
            ) from e
        except TransportClosedError:
            await self._teardown(clear_symbol_state=False, final_state=StreamState.DISCONNECTED)
            raise

        if self._connect_error is not None:
            error, self._connect_error = self._connect_error, None
            raise error
        if self._session is None:
            raise TransportClosedError(
                "Stream closed while connecting",
                url=credential.gateway_url,
                reason="disconnected",
                component="MarketDataStream",
            )

        self._started_at = datetime.now(timezone.utc)
        logger.info(f"[{self._name}] Streaming {len(wanted)} symbols")

    async def disconnect(self, clear_symbol_state: bool = True) -> None:
        """
        Tear down the session. Idempotent.

        Args:
            clear_symbol_state: Also drop per-symbol rolling state
        """
        if self._session is None:
            if self._state == StreamState.DISCONNECTED:
                return
            # Transport was lost earlier; finish the caller-visible teardown
            if clear_symbol_state:
                self._normalizer.clear()
            self._state = StreamState.DISCONNECTED
            return

        logger.info(f"[{self._name}] Disconnecting...")
        await self._teardown(clear_symbol_state, final_state=StreamState.DISCONNECTED)
        logger.info(f"[{self._name}] Disconnected")

    def clear_symbol_state(self) -> None:
        self._normalizer.clear()

    # --- Subscriptions ---

    async def update_symbols(self, symbols: Iterable[Symbol]) -> None:
        """
        Move the subscription to `symbols` without restarting the handshake.

        Before STREAMING the new set replaces the pending initial subscription;
        without a session this is a no-op.
        """
        wanted = list(symbols)
        async with self._lock:
            session = self._session
            subscriptions = self._subscriptions
            if session is None or subscriptions is None:
                logger.debug(f"[{self._name}] update_symbols ignored (not connected)")
                return

            if not session.handshake.is_streaming:
                subscriptions.replace(wanted)
                logger.debug(f"[{self._name}] Pending subscription replaced")
                return

            await subscriptions.update(wanted)

    async def subscribe_to_candles(
        self,
        symbol: Symbol,
        period: Period = "1m",
        from_time: Optional[int] = None,
    ) -> bool:
        """
        Request candles for `symbol` from `from_time` (Unix ms, default 24h ago).

        Returns:
            False if the stream is not STREAMING and nothing was sent
        """
        async with self._lock:
            session = self._session
            subscriptions = self._subscriptions
            if session is None or subscriptions is None or not session.handshake.is_streaming:
                logger.warning(
                    f"[{self._name}] Cannot subscribe candles for {symbol} in {self.state.value}"
                )
                return False
            return await subscriptions.subscribe_candles(symbol, period, from_time)

    def initialize_symbol_state(
        self, symbol: Symbol, last_price: float, volume: float = 0.0
    ) -> SymbolState:
        """Seed rolling state from an out-of-band quote so the first change is meaningful."""
        return self._normalizer.initialize(symbol, last_price, volume)

    # --- Internal: frames ---

    async def _send(self, frame: Frame) -> bool:
        session = self._session
        if session is None:
            return False
        return await session.connection.send(frame)

    async def _on_frame(self, frame: Frame) -> None:
        """Handle one decoded frame from the transport."""
        if self._closing:
            return
        if self._config.log_raw_messages:
            logger.debug(f"[{self._name}] <- {frame}")

        records: list[Record] = []
        lost: Optional[TransportClosedError] = None

        async with self._lock:
            session = self._session
            if session is None:
                return

            mtype = codec.message_type(frame)
            channel = codec.frame_channel(frame)

            if mtype == MessageType.FEED_DATA:
                if channel != session.channel_id or not session.handshake.is_streaming:
                    self._frames_ignored += 1
                else:
                    try:
                        records = self._normalizer.normalize(frame.get("data"))
                    except MessageParseError as e:
                        self._normalizer.stats.parse_errors += 1
                        logger.warning(f"[{self._name}] Dropping FEED_DATA: {e}")

            elif mtype == MessageType.CHANNEL_CLOSED and channel == session.channel_id:
                lost = TransportClosedError(
                    "Feed channel closed by gateway",
                    url=session.credential.gateway_url,
                    reason="CHANNEL_CLOSED",
                    component="MarketDataStream",
                )

            else:
                await session.handshake.handle(frame)

        if lost is not None:
            await self._on_transport_lost(lost)
            return

        if records:
            await self._dispatch(records)

    async def _dispatch(self, records: list[Record]) -> None:
        for record in records:
            if isinstance(record, Quote):
                self._quotes_emitted += 1
                callback: Optional[Callable[[Any], Awaitable[None]]] = self._quote_callback
            else:
                self._candles_emitted += 1
                callback = self._candle_callback

            if callback is None:
                continue
            try:
                await callback(record)
            except Exception as e:
                self._callback_errors += 1
                logger.error(f"[{self._name}] Callback error for {record.symbol}: {e}", exc_info=True)

    async def _on_handshake_complete(self) -> None:
        """Runs inside the frame lock when FEED_CONFIG arrives."""
        session = self._session
        subscriptions = self._subscriptions
        if session is None or subscriptions is None:
            return

        self._acknowledged_event.set()
        await subscriptions.subscribe()
        if self._session is session:
            session.keepalive.start()
        self._subscribed_event.set()

    async def _on_transport_lost(self, error: TransportClosedError) -> None:
        if self._session is None or self._closing:
            return

        during_connect = not self._subscribed_event.is_set()
        logger.warning(f"[{self._name}] Transport lost: {error}")
        if during_connect:
            # connect() is waiting; let it raise instead of notifying
            self._connect_error = error
        await self._teardown(clear_symbol_state=False, final_state=StreamState.CLOSED)
        if during_connect:
            return

        callback = self._closed_callback
        if callback is None:
            return
        try:
            await callback(error)
        except Exception as e:
            self._callback_errors += 1
            logger.error(f"[{self._name}] Transport-closed callback error: {e}", exc_info=True)

    # --- Internal: teardown ---

    async def _teardown(self, clear_symbol_state: bool, final_state: StreamState) -> None:
        session = self._session
        if session is None:
            return

        self._closing = True
        self._session = None
        try:
            await session.keepalive.stop()
            session.handshake.close()
            try:
                await session.connection.close()
            except Exception as e:
                logger.warning(f"[{self._name}] Error closing connection: {e}")
        finally:
            if self._subscriptions is not None:
                self._subscriptions.clear()
                self._subscriptions = None
            if clear_symbol_state:
                self._normalizer.clear()
            # Wake a connect() still waiting on this session
            self._acknowledged_event.set()
            self._subscribed_event.set()
            await self._release_http()
            self._started_at = None
            self._state = final_state
            self._closing = False

    def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def _release_http(self) -> None:
        if self._owns_http and self._http is not None:
            if not self._http.closed:
                await self._http.close()
            self._http = None

    # --- Internal: symbol mapping for the normalizer ---

    def _to_symbol(self, streamer_symbol: str) -> Symbol:
        if self._subscriptions is None:
            return streamer_symbol
        return self._subscriptions.to_symbol(streamer_symbol)

    def _candle_key(self, candle_symbol: str) -> Optional[tuple[Symbol, Period]]:
        if self._subscriptions is not None:
            return self._subscriptions.candle_key(candle_symbol)
        base, period = codec.parse_candle_symbol(candle_symbol)
        return None if period is None else (base, period)

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        stats: dict[str, Any] = {
            "state": self.state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "symbols": list(self.subscribed_symbols),
            "quotes_emitted": self._quotes_emitted,
            "candles_emitted": self._candles_emitted,
            "callback_errors": self._callback_errors,
            "frames_ignored": self._frames_ignored,
            "tracked_symbols": len(self._normalizer.states),
        }

        normalizer = self._normalizer.stats
        stats["normalizer"] = {
            "received": normalizer.events_received,
            "processed": normalizer.events_processed,
            "ignored": normalizer.events_ignored,
            "errors": normalizer.parse_errors,
            "by_type": dict(normalizer.by_type),
        }

        session = self._session
        if session is not None:
            metrics = session.connection.metrics
            stats["connection"] = {
                "messages_received": metrics.messages_received,
                "messages_sent": metrics.messages_sent,
                "sends_dropped": metrics.sends_dropped,
                "parse_errors": metrics.parse_errors,
                "errors": metrics.errors,
            }
            stats["keepalives_sent"] = session.keepalive.sent

        return stats
