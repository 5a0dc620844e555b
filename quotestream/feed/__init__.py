"""
Streaming Market Data Feed Module.

This module streams live quotes and candles for a changing set of symbols over
the multiplexed-channel feed protocol, and normalizes the compact wire events
into Quote and CandleRecord values.

Components:
- MarketDataStream: Top-level orchestration and lifecycle management
- StreamingTokenClient: Session token -> streaming token exchange
- FeedConnection: WebSocket lifecycle and serialized writes
- HandshakeStateMachine: SETUP/AUTH/CHANNEL_REQUEST/FEED_SETUP sequencing
- SubscriptionManager / SymbolResolver: Watch-list diffs and streamer symbols
- FeedDataNormalizer: Positional event decoding with rolling per-symbol state
- KeepaliveLoop: Control-channel keepalives

Usage:
    from quotestream.feed import MarketDataStream, StreamClientConfig

    stream = MarketDataStream(session_token, StreamClientConfig.from_env())
    stream.on_quote(handle_quote)
    await stream.connect(["AAPL", "MSFT"])
"""

from quotestream.feed.client import MarketDataStream
from quotestream.feed.config import ApiConfig, FeedConfig, MarketDataConfig, StreamClientConfig
from quotestream.feed.errors import (
    ConfigurationError,
    HandshakeTimeoutError,
    MessageParseError,
    NotEntitledError,
    ResolverFallback,
    StreamError,
    TokenExchangeError,
    TransportClosedError,
)
from quotestream.feed.types import (
    ConnectionState,
    MessageType,
    StreamingCredential,
    StreamState,
    SymbolState,
)

__all__ = [
    # Main entry point
    "MarketDataStream",
    "StreamClientConfig",
    "ApiConfig",
    "FeedConfig",
    "MarketDataConfig",
    # Types
    "StreamState",
    "ConnectionState",
    "MessageType",
    "StreamingCredential",
    "SymbolState",
    # Errors
    "StreamError",
    "ConfigurationError",
    "NotEntitledError",
    "TokenExchangeError",
    "HandshakeTimeoutError",
    "ResolverFallback",
    "TransportClosedError",
    "MessageParseError",
]
