"""
Feed data normalizer.

Turns positional COMPACT events into Quote and CandleRecord values:
- Quote: bid/ask update, last falls back bid -> ask -> stored last
- Trade: last trade price, volume accumulates by size
- Summary: seeds stored last price from the previous close, emits nothing
- Candle: OHLCV for a period-qualified candle symbol

Positions follow the field lists declared in FEED_SETUP (see codec.FEED_EVENT_FIELDS).
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Optional, Union

from quotestream.feed import codec
from quotestream.feed.errors import MessageParseError
from quotestream.feed.types import EventType, NormalizerStats, SymbolState
from quotestream.types.aliases import Period, Symbol, UnixMillis
from quotestream.types.types import CandleRecord, Quote

logger = logging.getLogger(__name__)

Record = Union[Quote, CandleRecord]


def _now_ms() -> UnixMillis:
    return int(time.time() * 1000)


def _identity(symbol: str) -> str:
    return symbol


def _default_candle_key(candle_symbol: str) -> Optional[tuple[Symbol, Period]]:
    base, period = codec.parse_candle_symbol(candle_symbol)
    if period is None:
        return None
    return base, period


def _field(event: list[Any], idx: int) -> Any:
    return event[idx] if idx < len(event) else None


def _safe_float(value: Any, field_name: str) -> float:
    """Convert a wire number; missing, NaN and infinite values read as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = value if isinstance(value, float) else float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def _safe_int(value: Any, field_name: str) -> int:
    return int(_safe_float(value, field_name))


def _change(last: float, previous: float) -> tuple[float, float]:
    if previous <= 0:
        return 0.0, 0.0
    change = last - previous
    return change, change * 100 / previous


class FeedDataNormalizer:
    """
    Stateful decoder for FEED_DATA payloads.

    Keeps one SymbolState per caller symbol. States outlive unsubscription
    and are dropped only by `clear()`.
    """

    def __init__(
        self,
        symbol_for: Callable[[str], Symbol] = _identity,
        candle_key: Callable[[str], Optional[tuple[Symbol, Period]]] = _default_candle_key,
        clock: Callable[[], UnixMillis] = _now_ms,
        name: str = "normalizer",
    ) -> None:
        """
        Initialize the normalizer.

        Args:
            symbol_for: Maps a streamer symbol to the caller's symbol
            candle_key: Maps a candle symbol to (symbol, period), or None if unknown
            clock: Source of update timestamps in Unix ms
            name: Name for logging purposes
        """
        self._symbol_for = symbol_for
        self._candle_key = candle_key
        self._clock = clock
        self._name = name

        self._states: dict[Symbol, SymbolState] = {}
        self._stats = NormalizerStats()
        self._handlers: dict[str, Callable[[list[Any]], Optional[Record]]] = {
            EventType.QUOTE.value: self._on_quote,
            EventType.TRADE.value: self._on_trade,
            EventType.SUMMARY.value: self._on_summary,
            EventType.CANDLE.value: self._on_candle,
        }

    @property
    def stats(self) -> NormalizerStats:
        return self._stats

    @property
    def states(self) -> dict[Symbol, SymbolState]:
        return dict(self._states)

    def get_state(self, symbol: Symbol) -> Optional[SymbolState]:
        return self._states.get(symbol)

    def initialize(self, symbol: Symbol, last_price: float, volume: float = 0.0) -> SymbolState:
        """Seed a symbol from an out-of-band quote so first changes are not zero."""
        state = SymbolState(last_price=last_price, volume=volume, updated_at=self._clock())
        self._states[symbol] = state
        return state

    def clear(self) -> None:
        self._states.clear()

    def normalize(self, data: Any) -> list[Record]:
        """
        Decode one FEED_DATA payload in wire order.

        Bad events are counted and skipped; they never fail the batch.

        Raises:
            MessageParseError: If the payload itself is not a list
        """
        records: list[Record] = []

        for event in codec.iter_compact_events(data):
            self._stats.events_received += 1

            if len(event) < 2 or not isinstance(event[0], str) or not event[1]:
                self._stats.events_ignored += 1
                continue

            event_type = event[0]
            handler = self._handlers.get(event_type)
            if handler is None:
                self._stats.events_ignored += 1
                continue

            try:
                record = handler(event)
            except MessageParseError as e:
                self._stats.parse_errors += 1
                logger.warning(f"[{self._name}] Skipping {event_type} event: {e}")
                continue

            self._stats.events_processed += 1
            self._stats.by_type[event_type] = self._stats.by_type.get(event_type, 0) + 1
            if record is not None:
                records.append(record)

        return records

    def _state_for(self, symbol: Symbol) -> SymbolState:
        state = self._states.get(symbol)
        if state is None:
            state = SymbolState(updated_at=self._clock())
            self._states[symbol] = state
        return state

    def _on_quote(self, event: list[Any]) -> Quote:
        symbol = self._symbol_for(str(event[1]))
        bid = _safe_float(_field(event, 2), "bidPrice")
        ask = _safe_float(_field(event, 3), "askPrice")

        state = self._state_for(symbol)
        previous = state.last_price
        last = bid or ask or previous
        change, change_percent = _change(last, previous)

        now = self._clock()
        state.last_price = last
        state.updated_at = now

        return Quote(
            symbol=symbol,
            bid=bid,
            ask=ask,
            last=last,
            change=change,
            change_percent=change_percent,
            volume=state.volume,
            ts=now,
        )

    def _on_trade(self, event: list[Any]) -> Optional[Quote]:
        symbol = self._symbol_for(str(event[1]))
        price = _safe_float(_field(event, 2), "price")
        size = _safe_float(_field(event, 3), "size")

        if price <= 0:
            # No usable price; leave stored state untouched
            logger.debug(f"[{self._name}] Trade without price for {symbol}")
            return None

        state = self._state_for(symbol)
        previous = state.last_price
        change, change_percent = _change(price, previous)

        now = self._clock()
        state.last_price = price
        state.volume += size
        state.updated_at = now

        return Quote(
            symbol=symbol,
            bid=price,
            ask=price,
            last=price,
            change=change,
            change_percent=change_percent,
            volume=state.volume,
            ts=now,
        )

    def _on_summary(self, event: list[Any]) -> None:
        symbol = self._symbol_for(str(event[1]))
        state = self._state_for(symbol)

        state.day_open = _safe_float(_field(event, 3), "dayOpenPrice")
        state.day_high = _safe_float(_field(event, 4), "dayHighPrice")
        state.day_low = _safe_float(_field(event, 5), "dayLowPrice")
        prev_close = _safe_float(_field(event, 6), "prevDayClosePrice")
        state.prev_close = prev_close

        if prev_close > 0:
            state.last_price = prev_close
        return None

    def _on_candle(self, event: list[Any]) -> CandleRecord:
        raw_symbol = str(event[1])
        key = self._candle_key(raw_symbol)
        if key is None:
            symbol, period = self._symbol_for(raw_symbol), ""
        else:
            symbol, period = key

        ts = _safe_int(_field(event, 2), "time")
        return CandleRecord(
            symbol=symbol,
            period=period,
            ts=ts if ts > 0 else self._clock(),
            open=_safe_float(_field(event, 3), "open"),
            high=_safe_float(_field(event, 4), "high"),
            low=_safe_float(_field(event, 5), "low"),
            close=_safe_float(_field(event, 6), "close"),
            volume=_safe_float(_field(event, 7), "volume"),
        )
