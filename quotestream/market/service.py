"""
Market data service - owner of quotes and candle buffers.

Starts a MarketDataStream for the watch-list and falls back to polling when
streaming cannot start or the transport is lost. Streaming and polling are
mutually exclusive.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from quotestream.feed.client import MarketDataStream
from quotestream.feed.config import MarketDataConfig
from quotestream.feed.errors import StreamError, TransportClosedError
from quotestream.market.candles import CandleBuffer
from quotestream.market.poller import FetchQuotes, QuotePoller
from quotestream.types.aliases import Period, Symbol
from quotestream.types.types import CandleRecord, Quote

logger = logging.getLogger(__name__)


class MarketDataService:
    """
    Keeps the latest Quote per symbol and a CandleBuffer per (symbol, period).

    Usage:
        service = MarketDataService(session_token, fetch_quotes=rest_client.quotes)
        await service.start_streaming(["AAPL", "MSFT"])
        await service.start_candle_streaming("AAPL", "5m")
        quote = service.get_quote("AAPL")
        ...
        await service.stop_streaming()
    """

    def __init__(
        self,
        session_token: str,
        config: Optional[MarketDataConfig] = None,
        *,
        fetch_quotes: Optional[FetchQuotes] = None,
        stream_factory: Optional[Callable[[], MarketDataStream]] = None,
        name: str = "market",
    ) -> None:
        """
        Initialize the service.

        Args:
            session_token: Caller's API session token
            config: Service configuration
            fetch_quotes: Out-of-band quote fetcher used for polling; no fallback without it
            stream_factory: Builds a fresh MarketDataStream per start_streaming call
            name: Name for logging purposes
        """
        self._config = config or MarketDataConfig()
        self._fetch_quotes = fetch_quotes
        self._name = name
        self._stream_factory = stream_factory or (
            lambda: MarketDataStream(session_token, self._config.stream, name=f"{name}.stream")
        )

        self._stream: Optional[MarketDataStream] = None
        self._poller: Optional[QuotePoller] = None
        self._symbols: list[Symbol] = []
        self._is_streaming = False

        self._quotes: dict[Symbol, Quote] = {}
        self._candles: dict[tuple[Symbol, Period], CandleBuffer] = {}
        self._error: Optional[StreamError] = None

    # --- Properties ---

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    @property
    def is_polling(self) -> bool:
        return self._poller is not None and self._poller.running

    @property
    def error(self) -> Optional[str]:
        """User-facing message of the last streaming failure."""
        if self._error is None:
            return None
        return self._error.args[0] if self._error.args else str(self._error)

    @property
    def last_exception(self) -> Optional[StreamError]:
        return self._error

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return tuple(self._symbols)

    @property
    def quotes(self) -> dict[Symbol, Quote]:
        return dict(self._quotes)

    # --- Streaming ---

    async def start_streaming(self, symbols: Iterable[Symbol]) -> bool:
        """
        Start streaming `symbols`, replacing any running stream or poller.

        Returns:
            True if streaming started, False if it fell back to polling (or had nothing to do)
        """
        wanted = list(dict.fromkeys(symbols))
        if not wanted:
            return False

        await self.stop_streaming()
        self._symbols = wanted

        stream = self._stream_factory()
        for symbol in wanted:
            existing = self._quotes.get(symbol)
            if existing is not None:
                stream.initialize_symbol_state(symbol, existing.last, existing.volume)

        stream.on_quote(self._on_quote)
        stream.on_candle(self._on_candle)
        stream.on_transport_closed(self._on_transport_closed)
        self._stream = stream

        try:
            await stream.connect(wanted)
        except StreamError as e:
            logger.error(f"[{self._name}] Failed to start streaming: {e}")
            self._error = e
            self._stream = None
            await stream.disconnect()
            await self._start_polling()
            return False

        self._is_streaming = True
        logger.info(f"[{self._name}] Streaming {wanted}")
        return True

    async def stop_streaming(self) -> None:
        stream = self._stream
        self._stream = None
        self._is_streaming = False
        if stream is not None:
            await stream.disconnect()
        await self._stop_polling()

    async def update_streaming_symbols(self, symbols: Iterable[Symbol]) -> None:
        self._symbols = list(dict.fromkeys(symbols))
        if self._stream is not None:
            await self._stream.update_symbols(self._symbols)
        if self._poller is not None:
            self._poller.update_symbols(self._symbols)

    async def start_candle_streaming(self, symbol: Symbol, period: Optional[Period] = None) -> bool:
        if self._stream is None:
            logger.error(f"[{self._name}] Stream not initialized")
            return False
        period = period or self._config.default_candle_period
        return await self._stream.subscribe_to_candles(symbol, period)

    # --- Data access ---

    def get_quote(self, symbol: Symbol) -> Optional[Quote]:
        return self._quotes.get(symbol)

    def get_candles(self, symbol: Symbol, period: Optional[Period] = None) -> list[CandleRecord]:
        buffer = self._candles.get((symbol, period or self._config.default_candle_period))
        return buffer.candles if buffer is not None else []

    def clear_error(self) -> None:
        self._error = None

    def clear(self) -> None:
        """Drop stored quotes, candles and the last error; a running stream keeps going."""
        self._quotes.clear()
        self._candles.clear()
        self._error = None

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "streaming": self._is_streaming,
            "polling": self.is_polling,
            "symbols": list(self._symbols),
            "quotes": len(self._quotes),
            "candle_series": len(self._candles),
            "error": self.error,
        }
        if self._stream is not None:
            stats["stream"] = self._stream.get_stats()
        if self._poller is not None:
            stats["poller"] = {"polls": self._poller.polls, "failures": self._poller.failures}
        return stats

    # --- Callbacks ---

    async def _on_quote(self, quote: Quote) -> None:
        self._quotes[quote.symbol] = quote

    async def _on_quotes(self, quotes: list[Quote]) -> None:
        for quote in quotes:
            self._quotes[quote.symbol] = quote

    async def _on_candle(self, candle: CandleRecord) -> None:
        key = (candle.symbol, candle.period)
        buffer = self._candles.get(key)
        if buffer is None:
            buffer = CandleBuffer(self._config.candle_buffer_size)
            self._candles[key] = buffer
        buffer.upsert(candle)

    async def _on_transport_closed(self, error: TransportClosedError) -> None:
        logger.warning(f"[{self._name}] Streaming lost, falling back to polling: {error}")
        self._error = error
        self._is_streaming = False

        stream = self._stream
        self._stream = None
        if stream is not None:
            await stream.disconnect(clear_symbol_state=False)
        await self._start_polling()

    # --- Polling ---

    async def _start_polling(self) -> None:
        if self._fetch_quotes is None:
            logger.warning(f"[{self._name}] No quote fetcher configured, polling disabled")
            return
        await self._stop_polling()
        self._poller = QuotePoller(
            self._fetch_quotes,
            self._on_quotes,
            interval_s=self._config.poll_interval_s,
            name=f"{self._name}.poller",
        )
        self._poller.start(self._symbols)

    async def _stop_polling(self) -> None:
        poller = self._poller
        self._poller = None
        if poller is not None:
            await poller.stop()
