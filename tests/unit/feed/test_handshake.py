"""
Unit tests for the handshake state machine.
"""

import pytest

from quotestream.feed.config import FeedConfig
from quotestream.feed.handshake import HandshakeStateMachine
from quotestream.feed.types import StreamState


class Harness:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.streaming_calls = 0
        self.machine = HandshakeStateMachine(FeedConfig(), "tok", self.send, self.on_streaming)

    async def send(self, frame: dict) -> bool:
        self.sent.append(frame)
        return True

    async def on_streaming(self) -> None:
        self.streaming_calls += 1

    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]


def auth_state(state: str) -> dict:
    return {"type": "AUTH_STATE", "channel": 0, "state": state}


CHANNEL_OPENED = {"type": "CHANNEL_OPENED", "channel": 3, "service": "FEED"}
FEED_CONFIG = {"type": "FEED_CONFIG", "channel": 3, "dataFormat": "COMPACT"}


@pytest.fixture
def harness() -> Harness:
    return Harness()


class TestHandshakeSequence:
    """Tests for the happy-path ordering."""

    @pytest.mark.asyncio
    async def test_start_sends_setup(self, harness) -> None:
        await harness.machine.start()
        assert harness.types() == ["SETUP"]
        assert harness.machine.state == StreamState.AWAITING_AUTH_STATE

    @pytest.mark.asyncio
    async def test_full_sequence_with_auth(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(auth_state("UNAUTHORIZED"))
        assert m.state == StreamState.AUTHORIZING
        assert harness.sent[-1] == {"type": "AUTH", "channel": 0, "token": "tok"}

        await m.handle(auth_state("AUTHORIZED"))
        assert m.state == StreamState.AWAITING_CHANNEL
        assert m.authorized is True

        await m.handle(CHANNEL_OPENED)
        assert m.state == StreamState.AWAITING_FEED_CONFIG

        await m.handle(FEED_CONFIG)
        assert m.state == StreamState.STREAMING
        assert m.is_streaming
        assert harness.types() == ["SETUP", "AUTH", "CHANNEL_REQUEST", "FEED_SETUP"]
        assert harness.streaming_calls == 1

    @pytest.mark.asyncio
    async def test_already_authorized_skips_auth(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(auth_state("AUTHORIZED"))
        assert harness.types() == ["SETUP", "CHANNEL_REQUEST"]
        assert harness.sent[-1]["channel"] == 3
        assert harness.sent[-1]["parameters"] == {"contract": "AUTO"}


class TestOutOfOrder:
    """Tests for ignored and repeated frames."""

    @pytest.mark.asyncio
    async def test_channel_opened_before_auth_is_ignored(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(CHANNEL_OPENED)
        await m.handle(FEED_CONFIG)
        assert m.state == StreamState.AWAITING_AUTH_STATE
        assert harness.types() == ["SETUP"]

    @pytest.mark.asyncio
    async def test_frames_before_start_are_ignored(self, harness) -> None:
        await harness.machine.handle(auth_state("UNAUTHORIZED"))
        assert harness.sent == []
        assert harness.machine.state == StreamState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_foreign_channel_is_ignored(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(auth_state("AUTHORIZED"))
        await m.handle({"type": "CHANNEL_OPENED", "channel": 7, "service": "FEED"})
        assert m.state == StreamState.AWAITING_CHANNEL

    @pytest.mark.asyncio
    async def test_repeated_feed_config_fires_once(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(auth_state("AUTHORIZED"))
        await m.handle(CHANNEL_OPENED)
        await m.handle(FEED_CONFIG)
        await m.handle(FEED_CONFIG)
        await m.handle(CHANNEL_OPENED)
        assert harness.streaming_calls == 1
        assert harness.types().count("FEED_SETUP") == 1

    @pytest.mark.asyncio
    async def test_revoked_authorization(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle(auth_state("AUTHORIZED"))
        await m.handle(CHANNEL_OPENED)
        await m.handle(FEED_CONFIG)

        await m.handle(auth_state("UNAUTHORIZED"))

        assert m.authorized is False
        assert m.state == StreamState.STREAMING
        assert "AUTH" not in harness.types()

    @pytest.mark.asyncio
    async def test_error_and_keepalive_do_not_advance(self, harness) -> None:
        m = harness.machine
        await m.start()
        await m.handle({"type": "ERROR", "channel": 0, "error": "BAD_ACTION", "message": "x"})
        await m.handle({"type": "KEEPALIVE", "channel": 0})
        assert m.state == StreamState.AWAITING_AUTH_STATE

    @pytest.mark.asyncio
    async def test_closed_ignores_everything(self, harness) -> None:
        m = harness.machine
        await m.start()
        m.close()
        await m.handle(auth_state("UNAUTHORIZED"))
        assert m.state == StreamState.CLOSED
        assert harness.types() == ["SETUP"]

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, harness) -> None:
        await harness.machine.start()
        await harness.machine.start()
        assert harness.types() == ["SETUP"]
