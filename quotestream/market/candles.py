"""Bounded, timestamp-ordered candle buffer."""

from __future__ import annotations

import bisect
import logging
from typing import Iterator, Optional

from quotestream.feed.errors import ConfigurationError
from quotestream.types.types import CandleRecord

logger = logging.getLogger(__name__)


class CandleBuffer:
    """
    Most recent `max_size` candles for one (symbol, period), oldest first.

    Upserts are idempotent per timestamp: a candle with a known timestamp
    replaces the stored one in place (the in-progress bar updating).
    """

    def __init__(self, max_size: int = 100) -> None:
        if max_size <= 0:
            raise ConfigurationError("max_size must be positive", field="max_size", value=max_size)
        self._max_size = max_size
        self._candles: list[CandleRecord] = []
        self._timestamps: list[int] = []

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def candles(self) -> list[CandleRecord]:
        return list(self._candles)

    @property
    def latest(self) -> Optional[CandleRecord]:
        return self._candles[-1] if self._candles else None

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[CandleRecord]:
        return iter(list(self._candles))

    def upsert(self, candle: CandleRecord) -> bool:
        """
        Insert or replace by timestamp, then drop from the oldest end.

        Returns:
            True if an existing candle was replaced
        """
        idx = bisect.bisect_left(self._timestamps, candle.ts)
        if idx < len(self._timestamps) and self._timestamps[idx] == candle.ts:
            self._candles[idx] = candle
            return True

        self._timestamps.insert(idx, candle.ts)
        self._candles.insert(idx, candle)

        overflow = len(self._candles) - self._max_size
        if overflow > 0:
            del self._candles[:overflow]
            del self._timestamps[:overflow]
        return False

    def clear(self) -> None:
        self._candles.clear()
        self._timestamps.clear()
