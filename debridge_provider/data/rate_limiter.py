import asyncio
import time
from typing import Awaitable, Callable

from loguru import logger


class RateLimiter:
    """
    Token bucket limiter for outbound calls.

    Tokens refill lazily on each acquisition. A caller that finds the bucket
    empty waits one refill interval and leaves the bucket drained; it is not
    credited for the time spent waiting, so no burst follows contention.
    """

    def __init__(self, max_tokens: float, tokens_per_second: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if max_tokens <= 0 or tokens_per_second <= 0:
            raise ValueError("max_tokens and tokens_per_second must be positive")
        self.max_tokens = float(max_tokens)
        self.tokens_per_second = float(tokens_per_second)
        self._clock = clock
        self._sleep = sleep
        self.tokens = self.max_tokens
        self.last_refill = clock()

    async def acquire(self) -> None:
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return

        wait = 1.0 / self.tokens_per_second
        logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
        await self._sleep(wait)
        self.tokens = 0.0
        self.last_refill = self._clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_second)
        self.last_refill = now
