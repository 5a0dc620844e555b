"""
Test doubles for the HTTP and WebSocket collaborators.

FakeHttpSession stands in for aiohttp.ClientSession (only `get` is used).
FakeGateway builds FakeConnection transports that answer handshake frames
from a script, so MarketDataStream.connect can run without a network.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

from quotestream.feed.config import FeedConfig
from quotestream.feed.errors import TransportClosedError
from quotestream.feed.types import ConnectionMetrics

Frame = dict[str, Any]

TOKEN_URL = "https://api.test/api-quote-tokens"
GATEWAY_URL = "wss://gateway.test/realtime"
STREAM_TOKEN = "stream-token-123"

TOKEN_PAYLOAD = {
    "data": {"token": STREAM_TOKEN, "dxlink-url": GATEWAY_URL, "level": "real-time"}
}

_NOT_JSON = object()


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, delay_s: float = 0.0) -> None:
        self.status = status
        self._payload = payload
        self.delay_s = delay_s

    async def json(self, content_type: Optional[str] = None) -> Any:
        if self._payload is _NOT_JSON:
            raise ValueError("not json")
        return self._payload

    @classmethod
    def not_json(cls, status: int = 200) -> FakeResponse:
        return cls(status, _NOT_JSON)


class _RequestContext:
    def __init__(self, result: Union[FakeResponse, BaseException]) -> None:
        self._result = result

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._result, BaseException):
            raise self._result
        if self._result.delay_s:
            await asyncio.sleep(self._result.delay_s)
        return self._result

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeHttpSession:
    """
    Routes GET requests by URL path suffix.

    Unrouted paths answer 404, which makes the resolver fall back.
    """

    def __init__(self, routes: Optional[dict[str, Union[FakeResponse, BaseException]]] = None):
        self.routes = dict(routes or {})
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.closed = False

    def get(self, url: str, headers: Optional[dict[str, str]] = None, timeout: Any = None):
        self.requests.append((url, dict(headers or {})))
        for suffix, result in self.routes.items():
            if url.endswith(suffix):
                return _RequestContext(result)
        return _RequestContext(FakeResponse(404, {"error": {"code": "not_found"}}))

    async def close(self) -> None:
        self.closed = True


def instrument_route(
    symbol: str, streamer_symbol: str, delay_s: float = 0.0
) -> tuple[str, FakeResponse]:
    return (
        f"/instruments/equities/{symbol}",
        FakeResponse(
            200, {"data": {"symbol": symbol, "streamer-symbol": streamer_symbol}}, delay_s=delay_s
        ),
    )


def http_session_for(
    *symbols: str, extra: Optional[dict[str, Any]] = None, lookup_delay_s: float = 0.0
) -> FakeHttpSession:
    """Token endpoint plus identity instrument lookups for `symbols`."""
    routes: dict[str, Any] = {"/api-quote-tokens": FakeResponse(200, TOKEN_PAYLOAD)}
    for symbol in symbols:
        path, response = instrument_route(symbol, symbol, lookup_delay_s)
        routes[path] = response
    routes.update(extra or {})
    return FakeHttpSession(routes)


def handshake_script(channel: int = 3, authorized_on_setup: bool = False) -> dict[str, list[Frame]]:
    """Gateway replies keyed by the outbound frame type that triggers them."""
    script: dict[str, list[Frame]] = {
        "AUTH": [{"type": "AUTH_STATE", "channel": 0, "state": "AUTHORIZED", "userId": "u1"}],
        "CHANNEL_REQUEST": [
            {"type": "CHANNEL_OPENED", "channel": channel, "service": "FEED", "parameters": {}}
        ],
        "FEED_SETUP": [
            {"type": "FEED_CONFIG", "channel": channel, "dataFormat": "COMPACT"}
        ],
    }
    if authorized_on_setup:
        script["SETUP"] = [
            {"type": "SETUP", "channel": 0, "keepaliveTimeout": 60, "version": "1.0"},
            {"type": "AUTH_STATE", "channel": 0, "state": "AUTHORIZED", "userId": "u1"},
        ]
    else:
        script["SETUP"] = [
            {"type": "SETUP", "channel": 0, "keepaliveTimeout": 60, "version": "1.0"},
            {"type": "AUTH_STATE", "channel": 0, "state": "UNAUTHORIZED"},
        ]
    return script


class FakeConnection:
    """In-memory FeedConnection replacement."""

    def __init__(
        self,
        *,
        url: str,
        config: FeedConfig,
        on_frame: Callable[[Frame], Awaitable[None]],
        on_close: Optional[Callable[[TransportClosedError], Awaitable[None]]] = None,
        session: Any = None,
        name: str = "connection",
        script: Optional[dict[str, list[Frame]]] = None,
        fail_open: Optional[BaseException] = None,
    ) -> None:
        self.url = url
        self.config = config
        self.on_frame = on_frame
        self.on_close = on_close
        self.session = session
        self.name = name
        self.script = script or {}
        self.fail_open = fail_open

        self.sent: list[Frame] = []
        self.metrics = ConnectionMetrics()
        self.is_open = False
        self.open_count = 0
        self.close_count = 0
        self._tasks: list[asyncio.Task[None]] = []

    async def open(self) -> None:
        self.open_count += 1
        if self.fail_open is not None:
            raise self.fail_open
        self.is_open = True

    async def send(self, frame: Frame) -> bool:
        if not self.is_open:
            self.metrics.sends_dropped += 1
            return False
        self.sent.append(frame)
        self.metrics.messages_sent += 1
        replies = self.script.get(frame["type"])
        if replies:
            self._tasks.append(asyncio.create_task(self._reply(list(replies))))
        return True

    async def _reply(self, frames: list[Frame]) -> None:
        for frame in frames:
            await self.deliver(frame)

    async def deliver(self, frame: Frame) -> None:
        """Push one inbound frame as the receive loop would."""
        self.metrics.messages_received += 1
        await self.on_frame(frame)

    async def lose(self, reason: str = "closed by server") -> None:
        """Simulate the server dropping the socket."""
        self.is_open = False
        if self.on_close is not None:
            await self.on_close(TransportClosedError("Feed connection lost", url=self.url, reason=reason))

    async def close(self) -> None:
        self.close_count += 1
        self.is_open = False

    async def settle(self) -> None:
        """Wait for scripted replies still in flight."""
        await asyncio.gather(*self._tasks)

    def sent_types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    def sent_of(self, frame_type: str) -> list[Frame]:
        return [frame for frame in self.sent if frame["type"] == frame_type]


class FakeGateway:
    """Connection factory that remembers every transport it built."""

    def __init__(
        self,
        script: Optional[dict[str, list[Frame]]] = None,
        fail_open: Optional[BaseException] = None,
    ) -> None:
        self.script = handshake_script() if script is None else script
        self.fail_open = fail_open
        self.connections: list[FakeConnection] = []

    def __call__(self, **kwargs: Any) -> FakeConnection:
        connection = FakeConnection(script=self.script, fail_open=self.fail_open, **kwargs)
        self.connections.append(connection)
        return connection

    @property
    def connection(self) -> FakeConnection:
        return self.connections[-1]


def feed_data(data: list[Any], channel: int = 3) -> Frame:
    return {"type": "FEED_DATA", "channel": channel, "data": data}
