"""Token-bucket limiter bounding how fast requests are issued upstream.

The bucket holds up to ``requests_per_minute`` tokens and refills
continuously at ``requests_per_minute / 60`` tokens per second. A caller
that finds the bucket empty sleeps until the next token instead of being
rejected. Waiters are admitted one at a time, in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._rpm = 0
        self._tokens = 0.0
        self._last_refill = clock()
        self.set_rate_limit(requests_per_minute)

    @property
    def requests_per_minute(self) -> int:
        return self._rpm

    @property
    def enabled(self) -> bool:
        return self._rpm > 0

    @property
    def queue_size(self) -> int:
        return self._waiting

    @property
    def available_tokens(self) -> float:
        self._refill(self._clock())
        return self._tokens

    def set_rate_limit(self, requests_per_minute: int) -> None:
        self._rpm = max(0, int(requests_per_minute or 0))
        self._tokens = float(self._rpm)
        self._last_refill = self._clock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self._rpm), self._tokens + elapsed * (self._rpm / 60.0))
        self._last_refill = now

    async def throttle(self) -> float:
        """Wait until a request may be issued; return the seconds spent waiting."""
        if self._rpm <= 0:
            return 0.0

        self._waiting += 1
        waited = 0.0
        try:
            async with self._lock:
                while True:
                    self._refill(self._clock())
                    if self._tokens >= 1.0:
                        self._tokens -= 1.0
                        return waited
                    delay = (1.0 - self._tokens) / (self._rpm / 60.0)
                    logger.debug(
                        "rate_limiter_wait delay_s=%.3f rpm=%d queued=%d",
                        delay,
                        self._rpm,
                        self._waiting,
                    )
                    # The lock is held while sleeping so admission stays FIFO.
                    await self._sleep(delay)
                    waited += delay
        finally:
            self._waiting -= 1
