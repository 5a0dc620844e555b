"""
Handshake state machine for the feed protocol.

Sequences SETUP -> AUTH -> CHANNEL_REQUEST -> FEED_SETUP against inbound
acknowledgements. Every transition is triggered by an inbound frame; nothing
here looks at the clock.

State Machine:
    [DISCONNECTED] --start()--> [CONNECTING] --SETUP sent--> [AWAITING_AUTH_STATE]
    [AWAITING_AUTH_STATE] --AUTH_STATE UNAUTHORIZED--> [AUTHORIZING]
    [AWAITING_AUTH_STATE | AUTHORIZING] --AUTH_STATE AUTHORIZED--> [AWAITING_CHANNEL]
    [AWAITING_CHANNEL] --CHANNEL_OPENED--> [AWAITING_FEED_CONFIG]
    [AWAITING_FEED_CONFIG] --FEED_CONFIG--> [STREAMING]
    any --close()--> [CLOSED]

Frames that arrive in the wrong state, or on a channel this session does not
own, are ignored. The gateway may resend idempotent notifications.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from quotestream.feed import codec
from quotestream.feed.codec import CONTROL_CHANNEL
from quotestream.feed.config import FeedConfig
from quotestream.feed.types import AuthState, MessageType, StreamState
from quotestream.types.aliases import Frame

logger = logging.getLogger(__name__)

SendFn = Callable[[Frame], Awaitable[bool]]


class HandshakeStateMachine:
    """Drives one session from transport open to STREAMING."""

    def __init__(
        self,
        config: FeedConfig,
        token: str,
        send: SendFn,
        on_streaming: Callable[[], Awaitable[None]],
        name: str = "handshake",
    ) -> None:
        """
        Initialize the state machine.

        Args:
            config: Feed configuration (channel id, keepalive negotiation, ...)
            token: Streaming token sent in AUTH
            send: Coroutine that writes a frame to the transport
            on_streaming: Awaited once when FEED_CONFIG completes the handshake
            name: Name for logging purposes
        """
        self._config = config
        self._token = token
        self._send = send
        self._on_streaming = on_streaming
        self._name = name

        self._state = StreamState.DISCONNECTED
        self._authorized = False

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def authorized(self) -> bool:
        return self._authorized

    @property
    def channel_id(self) -> int:
        return self._config.channel_id

    @property
    def is_streaming(self) -> bool:
        return self._state == StreamState.STREAMING

    def _set_state(self, new_state: StreamState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    async def start(self) -> None:
        """Announce capabilities once the transport is open."""
        if self._state != StreamState.DISCONNECTED:
            logger.warning(f"[{self._name}] Cannot start from state: {self._state.value}")
            return

        self._set_state(StreamState.CONNECTING)
        # State moves before the send so a fast reply finds us ready for it
        self._set_state(StreamState.AWAITING_AUTH_STATE)
        await self._send(codec.setup_message(self._config))

    def close(self) -> None:
        self._authorized = False
        self._set_state(StreamState.CLOSED)

    async def handle(self, frame: Frame) -> None:
        """Advance the handshake with one inbound control frame."""
        if self._state == StreamState.CLOSED:
            return

        channel = codec.frame_channel(frame)
        if channel is not None and channel not in (CONTROL_CHANNEL, self.channel_id):
            logger.debug(f"[{self._name}] Ignoring frame for foreign channel {channel}")
            return

        mtype = codec.message_type(frame)

        if mtype == MessageType.AUTH_STATE:
            await self._on_auth_state(frame)
        elif mtype == MessageType.CHANNEL_OPENED:
            await self._on_channel_opened(frame)
        elif mtype == MessageType.FEED_CONFIG:
            await self._on_feed_config(frame)
        elif mtype == MessageType.ERROR:
            logger.warning(
                f"[{self._name}] Gateway error: {frame.get('error')} {frame.get('message', '')}"
            )
        elif mtype in (MessageType.SETUP, MessageType.KEEPALIVE):
            logger.debug(f"[{self._name}] Received {mtype.value}")
        else:
            logger.debug(f"[{self._name}] Unhandled frame type: {frame.get('type')}")

    async def _on_auth_state(self, frame: Frame) -> None:
        auth_state = frame.get("state")

        if auth_state == AuthState.UNAUTHORIZED.value:
            was_authorized = self._authorized
            self._authorized = False
            if self._state == StreamState.AWAITING_AUTH_STATE:
                self._set_state(StreamState.AUTHORIZING)
                await self._send(codec.auth_message(self._token))
            elif was_authorized:
                logger.warning(f"[{self._name}] Gateway revoked authorization")
            else:
                logger.debug(f"[{self._name}] Ignoring UNAUTHORIZED in {self._state.value}")

        elif auth_state == AuthState.AUTHORIZED.value:
            self._authorized = True
            if self._state in (StreamState.AWAITING_AUTH_STATE, StreamState.AUTHORIZING):
                logger.info(f"[{self._name}] Authorized")
                self._set_state(StreamState.AWAITING_CHANNEL)
                await self._send(
                    codec.channel_request_message(self.channel_id, self._config.contract)
                )
            else:
                logger.debug(f"[{self._name}] Ignoring AUTHORIZED in {self._state.value}")

        else:
            logger.warning(f"[{self._name}] Unknown auth state: {auth_state!r}")

    async def _on_channel_opened(self, frame: Frame) -> None:
        if codec.frame_channel(frame) != self.channel_id:
            return
        if self._state != StreamState.AWAITING_CHANNEL:
            logger.debug(f"[{self._name}] Ignoring CHANNEL_OPENED in {self._state.value}")
            return

        self._set_state(StreamState.AWAITING_FEED_CONFIG)
        await self._send(
            codec.feed_setup_message(self.channel_id, self._config.aggregation_period)
        )

    async def _on_feed_config(self, frame: Frame) -> None:
        if codec.frame_channel(frame) != self.channel_id:
            return
        if self._state != StreamState.AWAITING_FEED_CONFIG:
            logger.debug(f"[{self._name}] Ignoring FEED_CONFIG in {self._state.value}")
            return

        self._set_state(StreamState.STREAMING)
        logger.info(f"[{self._name}] Handshake complete on channel {self.channel_id}")
        await self._on_streaming()
