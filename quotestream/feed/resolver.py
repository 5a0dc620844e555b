"""
Symbol resolver adapter.

Maps caller symbols to streamer-native symbols via the instrument lookup
endpoint. Lookups never fail a batch: any problem degrades the symbol to its
upper-cased literal form.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional
from urllib.parse import quote

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from quotestream.feed.config import ApiConfig
from quotestream.feed.errors import ResolverFallback
from quotestream.feed.types import ResolvedSymbol

logger = logging.getLogger(__name__)

INSTRUMENT_PATH = "/instruments/equities/{symbol}"


class _InstrumentData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    streamer_symbol: Optional[str] = Field(default=None, alias="streamer-symbol")


class _InstrumentResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: Optional[_InstrumentData] = None


class SymbolResolver:
    """Resolves streamer symbols, caching successful lookups."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: ApiConfig,
        session_token: str,
        name: str = "resolver",
    ) -> None:
        self._session = session
        self._config = config
        self._session_token = session_token
        self._name = name
        self._cache: dict[str, str] = {}
        self._fallback_count = 0

    @property
    def fallback_count(self) -> int:
        """Number of lookups that degraded to the literal symbol."""
        return self._fallback_count

    async def resolve(self, symbol: str) -> ResolvedSymbol:
        """Resolve one symbol; never raises for lookup failures."""
        cached = self._cache.get(symbol)
        if cached is not None:
            return ResolvedSymbol(symbol=symbol, streamer_symbol=cached)

        try:
            streamer_symbol = await self._lookup(symbol)
        except ResolverFallback as e:
            self._fallback_count += 1
            literal = symbol.upper()
            logger.warning(f"[{self._name}] Using literal symbol {literal!r}: {e}")
            return ResolvedSymbol(symbol=symbol, streamer_symbol=literal, fallback=True)

        self._cache[symbol] = streamer_symbol
        return ResolvedSymbol(symbol=symbol, streamer_symbol=streamer_symbol)

    async def resolve_many(self, symbols: Iterable[str]) -> list[ResolvedSymbol]:
        """Resolve a batch concurrently, in input order; one bad symbol does not block the rest."""
        return list(await asyncio.gather(*(self.resolve(symbol) for symbol in symbols)))

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _lookup(self, symbol: str) -> str:
        url = self._config.url(INSTRUMENT_PATH.format(symbol=quote(symbol, safe="")))
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)

        try:
            async with self._session.get(
                url,
                headers=self._config.auth_headers(self._session_token),
                timeout=timeout,
            ) as response:
                if not 200 <= response.status < 300:
                    raise ResolverFallback(
                        f"Instrument lookup returned {response.status}",
                        symbol=symbol,
                        status=response.status,
                        component="SymbolResolver",
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ResolverFallback(
                f"Instrument lookup failed: {e!r}",
                symbol=symbol,
                component="SymbolResolver",
            ) from e

        try:
            parsed = _InstrumentResponse.model_validate(payload)
        except ValidationError as e:
            raise ResolverFallback(
                "Malformed instrument response",
                symbol=symbol,
                component="SymbolResolver",
            ) from e

        if parsed.data is None or not parsed.data.streamer_symbol:
            raise ResolverFallback(
                "Instrument response has no streamer-symbol",
                symbol=symbol,
                component="SymbolResolver",
            )
        return parsed.data.streamer_symbol
