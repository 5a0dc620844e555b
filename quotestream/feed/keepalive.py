"""Periodic KEEPALIVE sender for the control channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from quotestream.feed import codec
from quotestream.types.aliases import Frame

logger = logging.getLogger(__name__)


class KeepaliveLoop:
    """
    Sends KEEPALIVE every `interval_s` while `is_alive()` holds.

    The interval has to stay well under the keepalive timeout negotiated in SETUP.
    """

    def __init__(
        self,
        send: Callable[[Frame], Awaitable[bool]],
        interval_s: float,
        is_alive: Callable[[], bool],
        name: str = "keepalive",
    ) -> None:
        self._send = send
        self._interval_s = interval_s
        self._is_alive = is_alive
        self._name = name

        self._task: Optional[asyncio.Task[None]] = None
        self._sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sent(self) -> int:
        return self._sent

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"{self._name}_loop")
        logger.debug(f"[{self._name}] Started (every {self._interval_s}s)")

    async def stop(self) -> None:
        """Stop the loop; safe to call repeatedly or from inside the loop's own task."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return

        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"[{self._name}] Stopped")

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)

                if not self._is_alive():
                    logger.debug(f"[{self._name}] Transport not ready, skipping")
                    continue

                if await self._send(codec.keepalive_message()):
                    self._sent += 1

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Loop cancelled")
            raise
