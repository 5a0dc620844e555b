"""Fallback quote polling used while streaming is unavailable."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from quotestream.types.aliases import Symbol
from quotestream.types.types import Quote

logger = logging.getLogger(__name__)

FetchQuotes = Callable[[list[Symbol]], Awaitable[list[Quote]]]


class QuotePoller:
    """
    Calls `fetch_quotes` every `interval_s` and hands results to `on_quotes`.

    A failed poll is logged and the timer keeps going.
    """

    def __init__(
        self,
        fetch_quotes: FetchQuotes,
        on_quotes: Callable[[list[Quote]], Awaitable[None]],
        interval_s: float = 5.0,
        name: str = "poller",
    ) -> None:
        self._fetch_quotes = fetch_quotes
        self._on_quotes = on_quotes
        self._interval_s = interval_s
        self._name = name

        self._symbols: list[Symbol] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._polls = 0
        self._failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return tuple(self._symbols)

    @property
    def polls(self) -> int:
        return self._polls

    @property
    def failures(self) -> int:
        return self._failures

    def start(self, symbols: Iterable[Symbol]) -> bool:
        """Start polling; returns False when there is nothing to poll."""
        self._symbols = list(dict.fromkeys(symbols))
        if not self._symbols:
            return False
        if self.running:
            return True

        self._task = asyncio.create_task(self._run(), name=f"{self._name}_loop")
        logger.info(f"[{self._name}] Polling {len(self._symbols)} symbols every {self._interval_s}s")
        return True

    def update_symbols(self, symbols: Iterable[Symbol]) -> None:
        self._symbols = list(dict.fromkeys(symbols))

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return

        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"[{self._name}] Polling stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            if not self._symbols:
                continue

            self._polls += 1
            try:
                quotes = await self._fetch_quotes(list(self._symbols))
                await self._on_quotes(quotes)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failures += 1
                logger.error(f"[{self._name}] Polling failed: {e}")
