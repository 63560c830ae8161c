"""Async sliding-window rate limiter for outbound provider requests."""

import asyncio
import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``max_requests`` acquisitions in any ``window_seconds`` span.

    Usage::

        limiter = RateLimiter(max_requests=60, window_seconds=60, name="dataforseo")
        async with limiter:
            await client.post(...)
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self._max = max_requests
        self._window = window_seconds
        self._name = name
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self._window:
            self._stamps.popleft()

    def wait_time(self) -> float:
        """Seconds until another request would be admitted (0 if one is free now)."""
        now = self._clock()
        self._evict(now)
        if len(self._stamps) < self._max:
            return 0.0
        return max(0.0, self._window - (now - self._stamps[0]))

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait = self.wait_time()
                if wait <= 0:
                    break
                logger.debug("RateLimiter(%s) sleeping %.2fs", self._name, wait)
                await asyncio.sleep(wait)
            self._stamps.append(self._clock())

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass

    @property
    def in_window(self) -> int:
        """Number of requests admitted within the current window."""
        self._evict(self._clock())
        return len(self._stamps)
