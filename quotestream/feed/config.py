"""
Configuration types for the streaming market-data client.

Provides immutable, validated configuration dataclasses for all feed components.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from quotestream.feed.errors import ConfigurationError

DEFAULT_API_BASE_URL = "https://api.cert.tastyworks.com"
DEFAULT_USER_AGENT = "quotestream/0.1"

ENV_PREFIX = "QUOTESTREAM_"

# Event types requested for every watched symbol
QUOTE_EVENT_TYPES: tuple[str, ...] = ("Trade", "Quote", "Profile", "Summary")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the authenticated HTTP endpoints."""

    base_url: str = DEFAULT_API_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "base_url must be an http(s) URL",
                field="base_url",
                value=self.base_url,
            )
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                "request_timeout_s must be positive",
                field="request_timeout_s",
                value=self.request_timeout_s,
            )

    def url(self, path: str) -> str:
        """Join an endpoint path onto the base URL."""
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def auth_headers(self, session_token: str) -> dict[str, str]:
        """Headers for an authenticated request."""
        return {
            "Authorization": session_token,
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }


@dataclass(frozen=True)
class FeedConfig:
    """Configuration for the feed protocol session."""

    # Channel used for market data (control channel is always 0)
    channel_id: int = 3
    setup_version: str = "0.1-quotestream/0.1.0"

    # Keepalive negotiation (seconds) and client-side ticker
    keepalive_timeout: int = 60
    accept_keepalive_timeout: int = 60
    keepalive_interval_s: float = 30.0

    # FEED_SETUP / CHANNEL_REQUEST parameters
    aggregation_period: float = 0.1
    contract: str = "AUTO"
    event_types: tuple[str, ...] = QUOTE_EVENT_TYPES

    # Connection behavior
    connect_timeout_s: float = 30.0
    handshake_timeout_s: float = 15.0

    # Candle history requested when no explicit start time is given
    candle_history_s: int = 24 * 3600

    def __post_init__(self) -> None:
        if self.channel_id <= 0:
            raise ConfigurationError(
                "channel_id must be positive (channel 0 is the control channel)",
                field="channel_id",
                value=self.channel_id,
            )
        if self.keepalive_interval_s <= 0:
            raise ConfigurationError(
                "keepalive_interval_s must be positive",
                field="keepalive_interval_s",
                value=self.keepalive_interval_s,
            )
        if self.keepalive_interval_s >= self.keepalive_timeout:
            raise ConfigurationError(
                "keepalive_interval_s must be below keepalive_timeout",
                field="keepalive_interval_s",
                value=self.keepalive_interval_s,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.handshake_timeout_s <= 0:
            raise ConfigurationError(
                "handshake_timeout_s must be positive",
                field="handshake_timeout_s",
                value=self.handshake_timeout_s,
            )
        if not self.event_types:
            raise ConfigurationError(
                "At least one event type must be requested",
                field="event_types",
            )


@dataclass(frozen=True)
class StreamClientConfig:
    """
    Immutable top-level configuration for MarketDataStream.

    Example:
        config = StreamClientConfig(
            api=ApiConfig(base_url="https://api.tastyworks.com"),
            feed=FeedConfig(handshake_timeout_s=10.0),
        )
    """

    api: ApiConfig = field(default_factory=ApiConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)

    # Logging
    log_raw_messages: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> StreamClientConfig:
        """
        Build a configuration from QUOTESTREAM_* environment variables.

        Recognized: QUOTESTREAM_API_BASE_URL, QUOTESTREAM_HANDSHAKE_TIMEOUT_S,
        QUOTESTREAM_LOG_RAW_MESSAGES.
        """
        env = os.environ if environ is None else environ

        api = ApiConfig(base_url=env.get(f"{ENV_PREFIX}API_BASE_URL", DEFAULT_API_BASE_URL))

        raw_timeout = env.get(f"{ENV_PREFIX}HANDSHAKE_TIMEOUT_S")
        if raw_timeout is None:
            feed = FeedConfig()
        else:
            try:
                feed = FeedConfig(handshake_timeout_s=float(raw_timeout))
            except ValueError as e:
                raise ConfigurationError(
                    "handshake_timeout_s must be a number",
                    field="handshake_timeout_s",
                    value=raw_timeout,
                ) from e

        log_raw = env.get(f"{ENV_PREFIX}LOG_RAW_MESSAGES", "").lower() in ("1", "true", "yes")
        return cls(api=api, feed=feed, log_raw_messages=log_raw)


@dataclass(frozen=True)
class MarketDataConfig:
    """Configuration for the MarketDataService owner layer."""

    poll_interval_s: float = 5.0
    candle_buffer_size: int = 100
    default_candle_period: str = "1m"
    stream: StreamClientConfig = field(default_factory=StreamClientConfig)

    def __post_init__(self) -> None:
        if self.poll_interval_s <= 0:
            raise ConfigurationError(
                "poll_interval_s must be positive",
                field="poll_interval_s",
                value=self.poll_interval_s,
            )
        if self.candle_buffer_size <= 0:
            raise ConfigurationError(
                "candle_buffer_size must be positive",
                field="candle_buffer_size",
                value=self.candle_buffer_size,
            )
