"""Sliding-window request limiter, one instance per provider+quota tier."""
import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_BUFFER_SECONDS = 0.1


class RateLimiter:
    """Admits at most ``max_rpm`` requests in any trailing ``window`` seconds.

    The prune / maybe-wait / push sequence runs under an asyncio.Lock, so
    concurrent callers are admitted one at a time in timestamp order. Clock
    and sleep are injectable for tests.
    """

    def __init__(
        self,
        max_rpm: int,
        *,
        window: float = DEFAULT_WINDOW_SECONDS,
        buffer: float = DEFAULT_BUFFER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_rpm = max_rpm
        self.window = window
        self.buffer = buffer
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def unthrottled(self) -> bool:
        return self.max_rpm <= 0

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    async def wait_for_slot(self) -> None:
        if self.unthrottled:
            return

        async with self._lock:
            now = self._clock()
            self._prune(now)
            while len(self._timestamps) >= self.max_rpm:
                wait = self._timestamps[0] + self.window - now + self.buffer
                if wait > 0:
                    logger.debug(f"Rate limit reached ({self.max_rpm} rpm), waiting {wait:.2f}s")
                    await self._sleep(wait)
                # The clock moved while we slept.
                now = self._clock()
                self._prune(now)
            self._timestamps.append(now)

    def in_window(self) -> int:
        """Number of admitted requests still inside the current window."""
        self._prune(self._clock())
        return len(self._timestamps)


class RateLimiterRegistry:
    """Hands out one RateLimiter per (provider, tier, max_rpm)."""

    def __init__(
        self,
        *,
        buffer: float = DEFAULT_BUFFER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._buffer = buffer
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[Tuple[str, str, int], RateLimiter] = {}

    def get(self, provider: str, tier: str, max_rpm: int) -> Optional[RateLimiter]:
        """Return the shared limiter for this tier, or None when unthrottled."""
        if max_rpm <= 0:
            return None
        key = (provider, tier, max_rpm)
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(
                max_rpm, buffer=self._buffer, clock=self._clock, sleep=self._sleep,
            )
            self._limiters[key] = limiter
            logger.info("Created rate limiter for %s/%s at %d rpm", provider, tier, max_rpm)
        return limiter
