"""
Process-wide request budget for the upstream leaderboard API.

The upstream limit is global to the crawler's IP, so a single RateLimiter is
shared by every caller in the process: the queue worker, and every worker of
the bulk refresh pool. It holds a hard request cap (protecting the upstream
service and the operator's quota) and a fixed inter-request delay.

The lock spans the whole HTTP round trip plus the delay, so upstream fetches
never overlap. In the bulk refresh pool XP_REFRESH_CONCURRENCY therefore only
overlaps database work; fetch throughput is bounded by one request per
(response time + delay) whatever the pool size.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from crawler.core.errors import RateCapExceeded

SleepFunc = Callable[[float], Awaitable[None]]


class RateLimiter:
    """
    Request counter, cap and inter-request delay as one injectable component.

    The lock is held across the request and the trailing delay, so consecutive
    upstream calls are spaced by at least `delay_seconds` no matter how many
    coroutines are issuing them.
    """

    def __init__(
        self,
        request_cap: int,
        delay_seconds: float,
        sleep: Optional[SleepFunc] = None,
    ):
        self.request_cap = request_cap
        self.delay_seconds = delay_seconds
        self.request_count = 0
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()

    @property
    def remaining(self) -> int:
        return max(0, self.request_cap - self.request_count)

    def is_exhausted(self) -> bool:
        return self.request_count >= self.request_cap

    @asynccontextmanager
    async def slot(self, context: str) -> AsyncIterator[None]:
        """
        Reserve the upstream for one request.

        Raises RateCapExceeded before any network call once the cap is reached.
        Only a request whose body completes without raising is counted and followed
        by the delay.
        """
        async with self._lock:
            if self.is_exhausted():
                raise RateCapExceeded(self.request_cap, context)
            yield
            self.request_count += 1
            if self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)


__all__ = ["RateLimiter", "SleepFunc"]
