"""
Unit tests for services/scoring/rate_limiter.py.

A fake clock whose sleep advances time makes the sliding window
deterministic: no real waiting happens.
"""

from __future__ import annotations

import asyncio

import pytest

from stancemap.services.scoring.rate_limiter import RateLimiter, RateLimiterRegistry


class FakeClock:

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _admit_all(limiter: RateLimiter, clock: FakeClock, calls: int) -> list[float]:
    admitted: list[float] = []

    async def one():
        await limiter.wait_for_slot()
        admitted.append(clock())

    async def main():
        await asyncio.gather(*(one() for _ in range(calls)))

    asyncio.run(main())
    return sorted(admitted)


def _max_in_any_window(timestamps: list[float], window: float = 60.0) -> int:
    return max(
        sum(1 for t in timestamps if end - window < t <= end)
        for end in timestamps
    )


class TestRateLimiter:

    def test_burst_under_ceiling_is_not_delayed(self):
        clock = FakeClock()
        limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
        admitted = _admit_all(limiter, clock, 5)
        assert admitted == [0.0] * 5
        assert clock.sleeps == []

    def test_window_invariant_under_concurrent_callers(self):
        clock = FakeClock()
        limiter = RateLimiter(3, clock=clock, sleep=clock.sleep)
        admitted = _admit_all(limiter, clock, 10)
        assert len(admitted) == 10
        assert _max_in_any_window(admitted) <= 3

    def test_wait_is_oldest_plus_window_plus_buffer(self):
        clock = FakeClock()
        limiter = RateLimiter(2, buffer=0.1, clock=clock, sleep=clock.sleep)
        admitted = _admit_all(limiter, clock, 3)
        assert clock.sleeps == [pytest.approx(60.1)]
        assert admitted[-1] == pytest.approx(60.1)

    def test_expired_timestamps_are_pruned(self):
        clock = FakeClock()
        limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
        _admit_all(limiter, clock, 2)
        clock.now = 61.0
        assert limiter.in_window() == 0
        _admit_all(limiter, clock, 2)
        assert clock.sleeps == []

    def test_zero_rpm_is_unthrottled(self):
        clock = FakeClock()
        limiter = RateLimiter(0, clock=clock, sleep=clock.sleep)
        _admit_all(limiter, clock, 50)
        assert limiter.unthrottled
        assert clock.sleeps == []


class TestRateLimiterRegistry:

    def test_same_tier_shares_one_limiter(self):
        registry = RateLimiterRegistry()
        a = registry.get("gemini", "grounded", 10)
        b = registry.get("gemini", "grounded", 10)
        assert a is b
        assert a.max_rpm == 10

    def test_tiers_are_independent(self):
        registry = RateLimiterRegistry()
        assert registry.get("gemini", "grounded", 10) is not registry.get("gemini", "standard", 10)

    def test_unthrottled_tier_has_no_limiter(self):
        assert RateLimiterRegistry().get("openai", "standard", 0) is None
