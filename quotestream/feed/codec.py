"""
Wire codec for the feed protocol.

Builds outbound JSON frames, encodes/decodes them with orjson, and unpacks
COMPACT FEED_DATA payloads into per-event positional arrays.

Field order in FEED_EVENT_FIELDS is a contract with the normalizer: events are
decoded by index, so the list declared in FEED_SETUP must match it exactly.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Iterator, Optional

import orjson

from quotestream.feed.config import FeedConfig
from quotestream.feed.errors import MessageParseError
from quotestream.feed.types import EventType, MessageType
from quotestream.types.aliases import Frame

CONTROL_CHANNEL = 0
DATA_FORMAT_COMPACT = "COMPACT"
FEED_SERVICE = "FEED"

FEED_EVENT_FIELDS: dict[str, tuple[str, ...]] = {
    EventType.TRADE.value: ("eventType", "eventSymbol", "price", "size", "dayVolume"),
    EventType.TRADE_ETH.value: ("eventType", "eventSymbol", "price", "size", "dayVolume"),
    EventType.QUOTE.value: (
        "eventType",
        "eventSymbol",
        "bidPrice",
        "askPrice",
        "bidSize",
        "askSize",
    ),
    EventType.GREEKS.value: (
        "eventType",
        "eventSymbol",
        "volatility",
        "delta",
        "gamma",
        "theta",
        "rho",
        "vega",
    ),
    EventType.PROFILE.value: (
        "eventType",
        "eventSymbol",
        "description",
        "shortSaleRestriction",
        "tradingStatus",
        "statusReason",
        "haltStartTime",
        "haltEndTime",
        "highLimitPrice",
        "lowLimitPrice",
        "high52WeekPrice",
        "low52WeekPrice",
    ),
    EventType.SUMMARY.value: (
        "eventType",
        "eventSymbol",
        "openInterest",
        "dayOpenPrice",
        "dayHighPrice",
        "dayLowPrice",
        "prevDayClosePrice",
    ),
    EventType.CANDLE.value: (
        "eventType",
        "eventSymbol",
        "time",
        "open",
        "high",
        "low",
        "close",
        "volume",
    ),
}

# AAPL{=1m} or AAPL{=5m,tho=true}
_CANDLE_SYMBOL_RE = re.compile(r"^(?P<base>[^{]+)\{=(?P<period>[^,}]+)(?:,[^}]*)?\}$")


# --- Frame encoding ---


def encode(message: Frame) -> str:
    """Serialize an outbound frame to JSON text."""
    return orjson.dumps(message).decode("utf-8")


def decode(raw: str | bytes) -> Frame:
    """
    Parse an inbound frame.

    Raises:
        MessageParseError: If the payload is not a JSON object with a "type" field
    """
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MessageParseError(
            f"Invalid JSON frame: {e}",
            raw_data=raw if isinstance(raw, str) else None,
            expected_type="object",
        ) from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MessageParseError(
            "Frame is not an object with a string 'type'",
            expected_type="object",
        )
    return data


def message_type(frame: Frame) -> MessageType:
    """Classify a decoded frame."""
    try:
        return MessageType(frame.get("type"))
    except ValueError:
        return MessageType.UNKNOWN


def frame_channel(frame: Frame) -> Optional[int]:
    channel = frame.get("channel")
    return channel if isinstance(channel, int) else None


# --- Outbound message builders ---


def setup_message(config: FeedConfig) -> Frame:
    return {
        "type": MessageType.SETUP.value,
        "channel": CONTROL_CHANNEL,
        "version": config.setup_version,
        "keepaliveTimeout": config.keepalive_timeout,
        "acceptKeepaliveTimeout": config.accept_keepalive_timeout,
    }


def auth_message(token: str) -> Frame:
    return {"type": MessageType.AUTH.value, "channel": CONTROL_CHANNEL, "token": token}


def channel_request_message(channel_id: int, contract: str = "AUTO") -> Frame:
    return {
        "type": MessageType.CHANNEL_REQUEST.value,
        "channel": channel_id,
        "service": FEED_SERVICE,
        "parameters": {"contract": contract},
    }


def feed_setup_message(channel_id: int, aggregation_period: float) -> Frame:
    return {
        "type": MessageType.FEED_SETUP.value,
        "channel": channel_id,
        "acceptAggregationPeriod": aggregation_period,
        "acceptDataFormat": DATA_FORMAT_COMPACT,
        "acceptEventFields": {name: list(fields) for name, fields in FEED_EVENT_FIELDS.items()},
    }


def feed_subscription_message(
    channel_id: int,
    *,
    add: Optional[list[dict[str, Any]]] = None,
    remove: Optional[list[dict[str, Any]]] = None,
    reset: Optional[bool] = None,
) -> Frame:
    """Build a FEED_SUBSCRIPTION frame; omitted parts are left out of the payload."""
    message: Frame = {"type": MessageType.FEED_SUBSCRIPTION.value, "channel": channel_id}
    if reset is not None:
        message["reset"] = reset
    if add:
        message["add"] = add
    if remove:
        message["remove"] = remove
    return message


def keepalive_message() -> Frame:
    return {"type": MessageType.KEEPALIVE.value, "channel": CONTROL_CHANNEL}


def subscription_entries(
    streamer_symbols: Iterable[str], event_types: Iterable[str]
) -> list[dict[str, Any]]:
    """One entry per (symbol x event type), grouped by symbol."""
    types = list(event_types)
    return [
        {"type": event_type, "symbol": symbol}
        for symbol in streamer_symbols
        for event_type in types
    ]


# --- Candle symbols ---


def candle_symbol(symbol: str, period: str) -> str:
    """Period-qualified candle key, e.g. AAPL{=1m}."""
    return f"{symbol}{{={period}}}"


def parse_candle_symbol(value: str) -> tuple[str, Optional[str]]:
    """Split AAPL{=1m} into ("AAPL", "1m"); plain symbols return (value, None)."""
    match = _CANDLE_SYMBOL_RE.match(value)
    if not match:
        return value, None
    return match.group("base"), match.group("period")


# --- FEED_DATA unpacking ---


def iter_compact_events(data: Any) -> Iterator[list[Any]]:
    """
    Yield positional event arrays from a FEED_DATA payload.

    Accepts a list of per-event arrays:
        [["Quote", "AAPL", 100.0, 101.0, 5, 7], ["Trade", "AAPL", 100.5, 10, 1200]]

    or the flattened COMPACT form, one value list per event type:
        ["Quote", ["Quote", "AAPL", 100.0, 101.0, 5, 7, "Quote", "MSFT", ...]]

    Raises:
        MessageParseError: If the payload is not a list
    """
    if not isinstance(data, list):
        raise MessageParseError("FEED_DATA payload is not a list", expected_type="list")

    if len(data) >= 2 and isinstance(data[0], str) and isinstance(data[1], list):
        yield from _iter_flattened(data)
        return

    for event in data:
        if isinstance(event, list):
            yield event


def _iter_flattened(data: list[Any]) -> Iterator[list[Any]]:
    for i in range(0, len(data) - 1, 2):
        event_type, values = data[i], data[i + 1]
        if not isinstance(event_type, str) or not isinstance(values, list):
            continue
        fields = FEED_EVENT_FIELDS.get(event_type)
        if fields is None:
            # Unknown width; surface the tag alone so it is counted as ignored
            yield [event_type]
            continue
        width = len(fields)
        for start in range(0, len(values) - width + 1, width):
            yield values[start : start + width]
