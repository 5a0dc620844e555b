"""
Shared types, enums, and data structures for the streaming client.

This module contains types that are used across multiple components
of the feed system.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from quotestream.feed.connection import FeedConnection
    from quotestream.feed.handshake import HandshakeStateMachine
    from quotestream.feed.keepalive import KeepaliveLoop


class StreamState(str, Enum):
    """Handshake and lifecycle state of a MarketDataStream."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_AUTH_STATE = "awaiting_auth_state"
    AUTHORIZING = "authorizing"
    AWAITING_CHANNEL = "awaiting_channel"
    AWAITING_FEED_CONFIG = "awaiting_feed_config"
    STREAMING = "streaming"
    CLOSED = "closed"


class ConnectionState(str, Enum):
    """State machine for the WebSocket transport."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class MessageType(str, Enum):
    """Feed protocol frame types."""

    SETUP = "SETUP"
    AUTH = "AUTH"
    AUTH_STATE = "AUTH_STATE"
    CHANNEL_REQUEST = "CHANNEL_REQUEST"
    CHANNEL_OPENED = "CHANNEL_OPENED"
    CHANNEL_CLOSED = "CHANNEL_CLOSED"
    FEED_SETUP = "FEED_SETUP"
    FEED_CONFIG = "FEED_CONFIG"
    FEED_SUBSCRIPTION = "FEED_SUBSCRIPTION"
    FEED_DATA = "FEED_DATA"
    KEEPALIVE = "KEEPALIVE"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class AuthState(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTHORIZED = "AUTHORIZED"


class EventType(str, Enum):
    """Event types carried in FEED_DATA."""

    TRADE = "Trade"
    TRADE_ETH = "TradeETH"
    QUOTE = "Quote"
    GREEKS = "Greeks"
    PROFILE = "Profile"
    SUMMARY = "Summary"
    CANDLE = "Candle"


@dataclass(frozen=True)
class StreamingCredential:
    """Short-lived streaming token and the gateway it is valid for."""

    token: str
    gateway_url: str
    level: Optional[str] = None

    def __repr__(self) -> str:
        # Keep the token out of logs
        return f"StreamingCredential(gateway_url={self.gateway_url!r}, level={self.level!r})"


@dataclass(frozen=True, slots=True)
class ResolvedSymbol:
    """Caller symbol paired with its streamer-native form."""

    symbol: str
    streamer_symbol: str
    fallback: bool = False


@dataclass
class SymbolState:
    """Rolling per-symbol state used to derive change fields."""

    last_price: float = 0.0
    volume: float = 0.0
    updated_at: int = field(default_factory=lambda: int(time.time() * 1000))

    # Last Summary values, informational only
    day_open: Optional[float] = None
    day_high: Optional[float] = None
    day_low: Optional[float] = None
    prev_close: Optional[float] = None


@dataclass
class StreamSession:
    """
    Everything owned by one live connection.

    Created by MarketDataStream.connect and dropped by disconnect.
    """

    credential: StreamingCredential
    connection: FeedConnection
    handshake: HandshakeStateMachine
    keepalive: KeepaliveLoop

    @property
    def channel_id(self) -> int:
        return self.handshake.channel_id


@dataclass
class ConnectionMetrics:
    """Counters for the WebSocket transport."""

    messages_received: int = 0
    bytes_received: int = 0
    messages_sent: int = 0
    sends_dropped: int = 0
    parse_errors: int = 0
    errors: int = 0

    # Timing
    connected_at: Optional[float] = None  # monotonic time
    last_message_at: Optional[float] = None  # monotonic time


@dataclass
class NormalizerStats:
    """Statistics for the feed data normalizer."""

    events_received: int = 0
    events_processed: int = 0
    events_ignored: int = 0
    parse_errors: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
