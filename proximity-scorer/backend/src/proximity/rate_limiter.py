from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, List

from loguru import logger


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` calls per ``time_window`` seconds."""

    def __init__(
        self,
        max_requests: int = 60,
        time_window: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.time_window = time_window
        self._clock = clock
        self._sleep = sleep
        self._requests: List[float] = []

    def _prune(self, now: float) -> None:
        self._requests = [ts for ts in self._requests if now - ts < self.time_window]

    async def throttle(self) -> None:
        while True:
            now = self._clock()
            self._prune(now)
            if len(self._requests) < self.max_requests:
                self._requests.append(now)
                return
            oldest = min(self._requests)
            wait = max(self.time_window - (now - oldest), 0.0)
            logger.info("Rate limit reached, waiting {:.0f}ms", wait * 1000)
            await self._sleep(wait)
