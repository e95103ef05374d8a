"""Per-backend rate limiters using aiolimiter.

Uses the token bucket algorithm; one limiter per search backend profile so a
burst of academic queries never starves the general profile.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from aiolimiter import AsyncLimiter

from topic_research.core.metrics import rate_limiter_throttled_total

T = TypeVar("T")


class RateLimiterRegistry:
    def __init__(self, max_rate: float, time_period: float = 1.0):
        self.max_rate = max_rate
        self.time_period = time_period
        self._limiters: dict[str, AsyncLimiter] = {}

    def get(self, api_name: str) -> AsyncLimiter:
        limiter = self._limiters.get(api_name)
        if limiter is None:
            limiter = AsyncLimiter(max_rate=self.max_rate, time_period=self.time_period)
            self._limiters[api_name] = limiter
        return limiter


async def rate_limited_call(
    limiter: AsyncLimiter,
    api_name: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Execute function with rate limiting and metrics tracking.

    Tracks when calls are throttled (waiting for rate limit tokens).
    """
    start = time.monotonic()
    async with limiter:
        wait_time = time.monotonic() - start
        # >10ms wait means the bucket was empty
        if wait_time > 0.01:
            rate_limiter_throttled_total.labels(api_name=api_name).inc()
        return await func(*args, **kwargs)
