"""Process-wide session flags shared between the HTTP gateway and SIP loop."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class SessionState:
    """Registration, call-in-progress and rate-limit flags.

    Every method runs synchronously on the event loop thread, so each guard
    operation is atomic with respect to all other tasks.
    """

    def __init__(self, *, penalty_time: float) -> None:
        self.penalty_time = penalty_time
        self.call_in_progress = False
        self.rate_limited = False
        self._registered = asyncio.Event()
        self._rate_limit_timer: asyncio.TimerHandle | None = None

    @property
    def registered(self) -> bool:
        return self._registered.is_set()

    def set_registered(self, value: bool) -> None:
        if value:
            self._registered.set()
        else:
            self._registered.clear()

    async def wait_registered(self) -> None:
        await self._registered.wait()

    def try_begin_call(self) -> bool:
        """Claim the single call slot and start the cooldown window.

        Returns False when a call is running or the cooldown is active.
        """
        if self.call_in_progress or self.rate_limited:
            return False
        self.call_in_progress = True
        self.rate_limited = True
        loop = asyncio.get_running_loop()
        self._rate_limit_timer = loop.call_later(
            self.penalty_time, self.clear_rate_limit
        )
        return True

    def end_call(self) -> None:
        self.call_in_progress = False

    def clear_rate_limit(self) -> None:
        if self._rate_limit_timer is not None:
            self._rate_limit_timer.cancel()
            self._rate_limit_timer = None
        if self.rate_limited:
            logger.info("Penalty time over")
        self.rate_limited = False
