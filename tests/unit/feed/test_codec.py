"""
Unit tests for the feed wire codec.
"""

import pytest

from quotestream.feed import codec
from quotestream.feed.config import FeedConfig
from quotestream.feed.errors import MessageParseError
from quotestream.feed.types import MessageType


class TestFrames:
    """Tests for frame encode/decode and classification."""

    def test_encode_is_compact_json(self) -> None:
        assert codec.encode({"type": "KEEPALIVE", "channel": 0}) == '{"type":"KEEPALIVE","channel":0}'

    def test_decode_object(self) -> None:
        frame = codec.decode('{"type":"AUTH_STATE","channel":0,"state":"AUTHORIZED"}')
        assert frame["state"] == "AUTHORIZED"
        assert codec.message_type(frame) == MessageType.AUTH_STATE
        assert codec.frame_channel(frame) == 0

    def test_decode_bytes(self) -> None:
        assert codec.decode(b'{"type":"KEEPALIVE"}')["type"] == "KEEPALIVE"

    def test_decode_invalid_json(self) -> None:
        with pytest.raises(MessageParseError):
            codec.decode("{not json")

    def test_decode_requires_type(self) -> None:
        with pytest.raises(MessageParseError):
            codec.decode('{"channel": 3}')
        with pytest.raises(MessageParseError):
            codec.decode("[1, 2, 3]")

    def test_unknown_type(self) -> None:
        assert codec.message_type({"type": "SOMETHING_NEW"}) == MessageType.UNKNOWN

    def test_non_int_channel(self) -> None:
        assert codec.frame_channel({"type": "X", "channel": "3"}) is None


class TestBuilders:
    """Tests for outbound message builders."""

    def test_setup_message(self) -> None:
        message = codec.setup_message(FeedConfig())
        assert message["type"] == "SETUP"
        assert message["channel"] == 0
        assert message["keepaliveTimeout"] == 60
        assert message["acceptKeepaliveTimeout"] == 60

    def test_auth_message(self) -> None:
        assert codec.auth_message("tok") == {"type": "AUTH", "channel": 0, "token": "tok"}

    def test_channel_request(self) -> None:
        message = codec.channel_request_message(3)
        assert message == {
            "type": "CHANNEL_REQUEST",
            "channel": 3,
            "service": "FEED",
            "parameters": {"contract": "AUTO"},
        }

    def test_feed_setup_declares_field_order(self) -> None:
        message = codec.feed_setup_message(3, 0.1)
        assert message["acceptDataFormat"] == "COMPACT"
        assert message["acceptAggregationPeriod"] == 0.1
        fields = message["acceptEventFields"]
        assert fields["Quote"][:4] == ["eventType", "eventSymbol", "bidPrice", "askPrice"]
        assert fields["Trade"][:4] == ["eventType", "eventSymbol", "price", "size"]
        assert fields["Summary"][6] == "prevDayClosePrice"
        assert fields["Candle"][2:] == ["time", "open", "high", "low", "close", "volume"]
        for name in ("Trade", "TradeETH", "Quote", "Greeks", "Profile", "Summary"):
            assert name in fields

    def test_subscription_omits_empty_parts(self) -> None:
        message = codec.feed_subscription_message(3, add=[], remove=[{"type": "Quote", "symbol": "A"}])
        assert "add" not in message
        assert "reset" not in message
        assert message["remove"] == [{"type": "Quote", "symbol": "A"}]

    def test_subscription_entries_grouped_by_symbol(self) -> None:
        entries = codec.subscription_entries(["AAPL", "MSFT"], ["Trade", "Quote"])
        assert entries == [
            {"type": "Trade", "symbol": "AAPL"},
            {"type": "Quote", "symbol": "AAPL"},
            {"type": "Trade", "symbol": "MSFT"},
            {"type": "Quote", "symbol": "MSFT"},
        ]


class TestCandleSymbols:
    """Tests for period-qualified candle symbols."""

    def test_candle_symbol(self) -> None:
        assert codec.candle_symbol("AAPL", "5m") == "AAPL{=5m}"

    def test_parse_candle_symbol(self) -> None:
        assert codec.parse_candle_symbol("AAPL{=5m}") == ("AAPL", "5m")
        assert codec.parse_candle_symbol("AAPL{=1d,tho=true}") == ("AAPL", "1d")

    def test_parse_plain_symbol(self) -> None:
        assert codec.parse_candle_symbol("AAPL") == ("AAPL", None)


class TestCompactEvents:
    """Tests for FEED_DATA unpacking."""

    def test_list_of_arrays(self) -> None:
        data = [["Quote", "AAPL", 100.0, 101.0, 5, 7], ["Trade", "AAPL", 100.5, 10, 1200]]
        assert list(codec.iter_compact_events(data)) == data

    def test_flattened_form(self) -> None:
        data = ["Trade", ["Trade", "AAPL", 100.5, 10, 1200, "Trade", "MSFT", 300.0, 5, 900]]
        events = list(codec.iter_compact_events(data))
        assert events == [
            ["Trade", "AAPL", 100.5, 10, 1200],
            ["Trade", "MSFT", 300.0, 5, 900],
        ]

    def test_flattened_multiple_types(self) -> None:
        data = [
            "Trade",
            ["Trade", "AAPL", 100.5, 10, 1200],
            "Quote",
            ["Quote", "AAPL", 100.0, 101.0, 5, 7],
        ]
        events = list(codec.iter_compact_events(data))
        assert [e[0] for e in events] == ["Trade", "Quote"]

    def test_flattened_unknown_type_yields_tag(self) -> None:
        assert list(codec.iter_compact_events(["Mystery", [1, 2, 3]])) == [["Mystery"]]

    def test_non_list_payload(self) -> None:
        with pytest.raises(MessageParseError):
            list(codec.iter_compact_events({"Quote": []}))
