from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from quotestream.types.aliases import Period, Symbol, UnixMillis


def _iso(ts: UnixMillis) -> str:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class Quote:
    """
    Normalized quote emitted for Quote and Trade events.

    change/change_percent are measured against the symbol's previously stored
    last price, never taken from the wire.
    """

    symbol: Symbol
    bid: float
    ask: float
    last: float
    change: float
    change_percent: float
    volume: float
    ts: UnixMillis  # Local update timestamp (Unix ms)

    @property
    def last_updated(self) -> str:
        """ISO-8601 form of the update timestamp."""
        return _iso(self.ts)


@dataclass(frozen=True, slots=True)
class CandleRecord:
    """Candlestick decoded from a Candle feed event."""

    symbol: Symbol
    period: Period
    ts: UnixMillis  # Candle start time (Unix ms)
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def timestamp(self) -> datetime:
        """Candle start as an aware UTC datetime."""
        return datetime.fromtimestamp(self.ts / 1000, tz=timezone.utc)

    @property
    def iso_timestamp(self) -> str:
        return _iso(self.ts)
