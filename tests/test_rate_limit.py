"""
Tests for the process-wide Relic request limiter.

Tests cover:
- Request counting (only completed requests count)
- Hard cap raising RateCapExceeded before any request
- Inter-request delay via injected sleep
- Serialization of concurrent callers
"""

import asyncio

import pytest

from crawler.core.errors import ErrorKind, RateCapExceeded
from crawler.core.rate_limit import RateLimiter


class TestRequestCounting:
    @pytest.mark.asyncio
    async def test_successful_slot_counts_one_request(self, fake_sleep):
        limiter = RateLimiter(request_cap=10, delay_seconds=0.35, sleep=fake_sleep)

        async with limiter.slot("profile:1"):
            pass

        assert limiter.request_count == 1
        assert limiter.remaining == 9
        assert fake_sleep.calls == [0.35]

    @pytest.mark.asyncio
    async def test_failed_request_is_not_counted(self, fake_sleep):
        limiter = RateLimiter(request_cap=10, delay_seconds=0.35, sleep=fake_sleep)

        with pytest.raises(RuntimeError):
            async with limiter.slot("profile:1"):
                raise RuntimeError("connection reset")

        assert limiter.request_count == 0
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_sleep(self, fake_sleep):
        limiter = RateLimiter(request_cap=10, delay_seconds=0, sleep=fake_sleep)

        async with limiter.slot("profile:1"):
            pass

        assert fake_sleep.calls == []


class TestRequestCap:
    @pytest.mark.asyncio
    async def test_cap_raises_before_request(self, fake_sleep):
        limiter = RateLimiter(request_cap=2, delay_seconds=0, sleep=fake_sleep)
        entered = []

        for _ in range(2):
            async with limiter.slot("profile:1"):
                entered.append(True)

        with pytest.raises(RateCapExceeded) as exc_info:
            async with limiter.slot("profile:2"):
                entered.append(True)

        assert len(entered) == 2
        assert limiter.is_exhausted()
        assert exc_info.value.kind == ErrorKind.RATE_CAP
        assert "profile:2" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_zero_cap_is_immediately_exhausted(self):
        limiter = RateLimiter(request_cap=0, delay_seconds=0)

        with pytest.raises(RateCapExceeded):
            async with limiter.slot("x"):
                pass


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_callers_are_serialized(self):
        """The lock covers the request and its delay, so bodies never overlap."""
        in_flight = 0
        max_in_flight = 0

        async def no_wait(seconds: float) -> None:
            await asyncio.sleep(0)

        limiter = RateLimiter(request_cap=100, delay_seconds=0.01, sleep=no_wait)

        async def call(i: int) -> None:
            nonlocal in_flight, max_in_flight
            async with limiter.slot(f"profile:{i}"):
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
                await asyncio.sleep(0)
                in_flight -= 1

        await asyncio.gather(*(call(i) for i in range(10)))

        assert max_in_flight == 1
        assert limiter.request_count == 10

    @pytest.mark.asyncio
    async def test_shared_cap_across_workers(self):
        limiter = RateLimiter(request_cap=5, delay_seconds=0)
        outcomes = []

        async def call(i: int) -> None:
            try:
                async with limiter.slot(f"profile:{i}"):
                    outcomes.append("ok")
            except RateCapExceeded:
                outcomes.append("capped")

        await asyncio.gather(*(call(i) for i in range(8)))

        assert outcomes.count("ok") == 5
        assert outcomes.count("capped") == 3
