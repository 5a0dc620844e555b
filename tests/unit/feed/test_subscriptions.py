"""
Unit tests for the subscription manager.
"""

import time

import pytest

from quotestream.feed.config import ApiConfig, FeedConfig
from quotestream.feed.resolver import SymbolResolver
from quotestream.feed.subscriptions import SubscriptionManager
from tests.fixtures.fixtures import FakeHttpSession, instrument_route


class Recorder:
    def __init__(self) -> None:
        self.frames: list[dict] = []

    async def __call__(self, frame: dict) -> bool:
        self.frames.append(frame)
        return True


@pytest.fixture
def sent() -> Recorder:
    return Recorder()


@pytest.fixture
def manager(sent: Recorder) -> SubscriptionManager:
    routes = dict(instrument_route(s, s) for s in ("AAPL", "MSFT", "NVDA"))
    routes.update([instrument_route("BRK.B", "BRK/B")])
    resolver = SymbolResolver(FakeHttpSession(routes), ApiConfig(base_url="https://api.test"), "s")
    return SubscriptionManager(resolver, sent, FeedConfig())


def symbols_in(entries: list[dict]) -> list[str]:
    return list(dict.fromkeys(e["symbol"] for e in entries))


class TestInitialSubscription:
    """Tests for subscribe()."""

    @pytest.mark.asyncio
    async def test_reset_with_full_interest_set(self, manager, sent) -> None:
        manager.replace(["AAPL", "MSFT"])

        assert await manager.subscribe() is True

        (frame,) = sent.frames
        assert frame["type"] == "FEED_SUBSCRIPTION"
        assert frame["channel"] == 3
        assert frame["reset"] is True
        assert len(frame["add"]) == 8
        assert {e["type"] for e in frame["add"]} == {"Trade", "Quote", "Profile", "Summary"}
        assert symbols_in(frame["add"]) == ["AAPL", "MSFT"]

    @pytest.mark.asyncio
    async def test_nothing_to_subscribe(self, manager, sent) -> None:
        assert await manager.subscribe() is False
        assert sent.frames == []

    @pytest.mark.asyncio
    async def test_maps_streamer_symbols_back(self, manager, sent) -> None:
        manager.replace(["BRK.B", "xyz"])
        await manager.subscribe()

        assert symbols_in(sent.frames[0]["add"]) == ["BRK/B", "XYZ"]
        assert manager.to_symbol("BRK/B") == "BRK.B"
        assert manager.to_symbol("XYZ") == "xyz"
        assert manager.to_symbol("UNKNOWN") == "UNKNOWN"

    def test_replace_deduplicates(self, manager) -> None:
        manager.replace(["AAPL", "MSFT", "AAPL"])
        assert manager.desired == ("AAPL", "MSFT")

    @pytest.mark.asyncio
    async def test_case_variants_collapse_to_first_spelling(self, manager, sent) -> None:
        manager.replace(["xyz", "XYZ", "AAPL"])
        await manager.subscribe()

        assert manager.desired == ("xyz", "AAPL")
        assert symbols_in(sent.frames[0]["add"]) == ["XYZ", "AAPL"]
        assert manager.to_symbol("XYZ") == "xyz"


class TestUpdate:
    """Tests for update()."""

    @pytest.mark.asyncio
    async def test_remove_then_add(self, manager, sent) -> None:
        manager.replace(["AAPL", "MSFT"])

        added, removed = await manager.update(["MSFT", "NVDA"])

        assert added == ["NVDA"]
        assert removed == ["AAPL"]
        remove_frame, add_frame = sent.frames
        assert symbols_in(remove_frame["remove"]) == ["AAPL"]
        assert "add" not in remove_frame
        assert symbols_in(add_frame["add"]) == ["NVDA"]
        assert "reset" not in add_frame
        assert manager.desired == ("MSFT", "NVDA")

    @pytest.mark.asyncio
    async def test_no_change_sends_nothing(self, manager, sent) -> None:
        manager.replace(["AAPL"])
        await manager.update(["AAPL"])
        assert sent.frames == []

    @pytest.mark.asyncio
    async def test_desired_set_follows_last_call(self, manager) -> None:
        manager.replace(["AAPL"])
        await manager.update(["MSFT"])
        await manager.update(["NVDA", "AAPL"])
        await manager.update(["AAPL", "MSFT"])
        assert set(manager.desired) == {"AAPL", "MSFT"}

    @pytest.mark.asyncio
    async def test_clear(self, manager) -> None:
        manager.replace(["AAPL"])
        await manager.subscribe()
        manager.clear()
        assert manager.desired == ()
        assert manager.to_symbol("AAPL") == "AAPL"


class TestCandles:
    """Tests for subscribe_candles()."""

    @pytest.mark.asyncio
    async def test_explicit_from_time(self, manager, sent) -> None:
        assert await manager.subscribe_candles("AAPL", "5m", from_time=1_700_000_000_000)

        (frame,) = sent.frames
        assert frame["reset"] is False
        assert frame["add"] == [{"type": "Candle", "symbol": "AAPL{=5m}", "fromTime": 1_700_000_000_000}]
        assert manager.candle_key("AAPL{=5m}") == ("AAPL", "5m")
        assert manager.candle_subscriptions == (("AAPL", "5m"),)

    @pytest.mark.asyncio
    async def test_default_from_time_is_a_day_back(self, manager, sent) -> None:
        before = int(time.time() * 1000)
        await manager.subscribe_candles("AAPL")
        after = int(time.time() * 1000)

        entry = sent.frames[0]["add"][0]
        assert entry["symbol"] == "AAPL{=1m}"
        day_ms = 24 * 3600 * 1000
        assert before - day_ms - 1000 <= entry["fromTime"] <= after - day_ms + 1000

    @pytest.mark.asyncio
    async def test_uses_resolved_streamer_symbol(self, manager, sent) -> None:
        manager.replace(["BRK.B"])
        await manager.subscribe()

        await manager.subscribe_candles("BRK.B", "1d", from_time=0)

        assert sent.frames[-1]["add"][0]["symbol"] == "BRK/B{=1d}"
        assert manager.candle_key("BRK/B{=1d}") == ("BRK.B", "1d")

    def test_unknown_candle_key_parsed(self, manager) -> None:
        assert manager.candle_key("MSFT{=1h}") == ("MSFT", "1h")
        assert manager.candle_key("MSFT") is None
