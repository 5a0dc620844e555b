"""
Subscription manager.

Tracks the set of symbols the caller wants streamed, turns changes to that set
into FEED_SUBSCRIPTION add/remove frames, and remembers which streamer symbol
belongs to which caller symbol so inbound events can be keyed by the latter.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from quotestream.feed import codec
from quotestream.feed.config import FeedConfig
from quotestream.feed.resolver import SymbolResolver
from quotestream.feed.types import EventType, ResolvedSymbol
from quotestream.types.aliases import Frame

logger = logging.getLogger(__name__)

SendFn = Callable[[Frame], Awaitable[bool]]


def _ordered_unique(symbols: Iterable[str]) -> list[str]:
    """Drop repeats, treating case variants ("aapl", "AAPL") as one symbol; first spelling wins."""
    seen: dict[str, str] = {}
    for symbol in symbols:
        seen.setdefault(symbol.upper(), symbol)
    return list(seen.values())


class SubscriptionManager:
    """
    Owns the desired symbol set for one stream.

    Sends go through `send`; the caller decides whether the stream is in a
    state where subscribing makes sense.
    """

    def __init__(
        self,
        resolver: SymbolResolver,
        send: SendFn,
        config: FeedConfig,
        name: str = "subscriptions",
    ) -> None:
        self._resolver = resolver
        self._send = send
        self._config = config
        self._name = name

        self._desired: list[str] = []
        self._streamer_to_symbol: dict[str, str] = {}
        self._candle_keys: dict[str, tuple[str, str]] = {}  # candle symbol -> (symbol, period)

    @property
    def desired(self) -> tuple[str, ...]:
        """Symbols currently wanted, in request order."""
        return tuple(self._desired)

    @property
    def candle_subscriptions(self) -> tuple[tuple[str, str], ...]:
        return tuple(self._candle_keys.values())

    def replace(self, symbols: Iterable[str]) -> None:
        """Set the desired symbols without sending anything (used before the handshake)."""
        self._desired = _ordered_unique(symbols)

    def to_symbol(self, streamer_symbol: str) -> str:
        """Map a streamer symbol back to the caller's symbol."""
        return self._streamer_to_symbol.get(streamer_symbol, streamer_symbol)

    def candle_key(self, candle_symbol: str) -> Optional[tuple[str, str]]:
        """(symbol, period) for a subscribed candle symbol."""
        found = self._candle_keys.get(candle_symbol)
        if found is not None:
            return found
        base, period = codec.parse_candle_symbol(candle_symbol)
        if period is None:
            return None
        return self.to_symbol(base), period

    async def subscribe(self, symbols: Optional[Iterable[str]] = None) -> bool:
        """
        Send the initial, resetting subscription.

        Defaults to the current desired set.
        """
        targets = self._desired if symbols is None else _ordered_unique(symbols)
        if not targets:
            logger.debug(f"[{self._name}] Nothing to subscribe")
            return False

        resolved = await self._resolve(targets)
        message = codec.feed_subscription_message(
            self._config.channel_id,
            reset=True,
            add=codec.subscription_entries(
                [r.streamer_symbol for r in resolved], self._config.event_types
            ),
        )
        logger.info(f"[{self._name}] Subscribing {len(resolved)} symbols")
        return await self._send(message)

    async def update(self, symbols: Iterable[str]) -> tuple[list[str], list[str]]:
        """
        Move the subscription to a new symbol set.

        Removed symbols are unsubscribed but keep their rolling state elsewhere.

        Returns:
            (added, removed) caller symbols
        """
        new_symbols = _ordered_unique(symbols)
        new_set = set(new_symbols)
        current = set(self._desired)

        to_add = [s for s in new_symbols if s not in current]
        to_remove = [s for s in self._desired if s not in new_set]

        if to_remove:
            resolved = await self._resolve(to_remove)
            await self._send(
                codec.feed_subscription_message(
                    self._config.channel_id,
                    remove=codec.subscription_entries(
                        [r.streamer_symbol for r in resolved], self._config.event_types
                    ),
                )
            )
            logger.info(f"[{self._name}] Unsubscribed {to_remove}")

        if to_add:
            resolved = await self._resolve(to_add)
            await self._send(
                codec.feed_subscription_message(
                    self._config.channel_id,
                    add=codec.subscription_entries(
                        [r.streamer_symbol for r in resolved], self._config.event_types
                    ),
                )
            )
            logger.info(f"[{self._name}] Subscribed {to_add}")

        self._desired = new_symbols
        return to_add, to_remove

    async def subscribe_candles(
        self,
        symbol: str,
        period: str = "1m",
        from_time: Optional[int] = None,
    ) -> bool:
        """
        Request candles for one symbol starting at `from_time` (Unix ms).

        Defaults to the configured history window before now.
        """
        streamer_symbol = self._known_streamer_symbol(symbol)
        key = codec.candle_symbol(streamer_symbol, period)
        if from_time is None:
            from_time = int((time.time() - self._config.candle_history_s) * 1000)

        self._candle_keys[key] = (symbol, period)
        message = codec.feed_subscription_message(
            self._config.channel_id,
            reset=False,
            add=[{"type": EventType.CANDLE.value, "symbol": key, "fromTime": from_time}],
        )
        logger.info(f"[{self._name}] Subscribing candles {key} from {from_time}")
        return await self._send(message)

    def clear(self) -> None:
        self._desired = []
        self._streamer_to_symbol.clear()
        self._candle_keys.clear()

    def _known_streamer_symbol(self, symbol: str) -> str:
        for streamer_symbol, original in self._streamer_to_symbol.items():
            if original == symbol:
                return streamer_symbol
        return symbol

    async def _resolve(self, symbols: list[str]) -> list[ResolvedSymbol]:
        resolved = await self._resolver.resolve_many(symbols)
        for item in resolved:
            self._streamer_to_symbol[item.streamer_symbol] = item.symbol
        return resolved
