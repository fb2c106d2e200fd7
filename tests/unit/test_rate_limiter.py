"""Unit tests for the store-backed rate limiter."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from airsafety.kernel.models.rate_limit import RateLimitCounter
from airsafety.kernel.ratelimit.rate_limiter import (
    RateLimiter,
    RateLimitResult,
    format_retry_after,
    subject_key,
)

KEY = "login:ip:203.0.113.7"
WINDOW = 300


async def _counter(session_factory, key=KEY):
    async with session_factory() as session:
        result = await session.execute(select(RateLimitCounter).where(RateLimitCounter.key == key))
        return result.scalar_one_or_none()


class TestRateLimiter:
    """Tests for RateLimiter.check and cleanup."""

    async def test_allows_max_then_denies(self, rate_limiter, clock):
        results = [await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        denied = results[-1]
        assert denied.remaining == 0
        assert clock.now < denied.reset_at <= clock.now + WINDOW * 1000

    async def test_denied_attempts_do_not_extend_window(self, rate_limiter, clock):
        for _ in range(5):
            await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)
        first_denial = await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        clock.advance(100)
        later_denial = await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        assert later_denial.allowed is False
        assert later_denial.reset_at == first_denial.reset_at

    async def test_window_reset(self, rate_limiter, clock):
        for _ in range(6):
            await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        clock.advance(WINDOW)
        result = await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        assert result.allowed is True
        assert result.remaining == 4
        assert result.reset_at == clock.now + WINDOW * 1000

    async def test_keys_are_independent(self, rate_limiter):
        for _ in range(5):
            await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        other = await rate_limiter.check("login:ip:198.51.100.1", max_requests=5, window_seconds=WINDOW)

        assert other.allowed is True

    async def test_shrunk_window_is_clamped(self, rate_limiter, session_factory, clock):
        for _ in range(5):
            await rate_limiter.check(KEY, max_requests=5, window_seconds=3600)

        # Configured window shrank from an hour to five minutes
        result = await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        assert result.allowed is True
        assert result.reset_at == clock.now + WINDOW * 1000
        counter = await _counter(session_factory)
        assert counter.count == 1

    async def test_counter_persisted(self, rate_limiter, session_factory, clock):
        await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)
        await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        counter = await _counter(session_factory)
        assert counter.count == 2
        assert counter.reset_at == clock.now + WINDOW * 1000
        assert counter.created_at == clock.now

    async def test_concurrent_checks_never_exceed_max(self, rate_limiter):
        results = await asyncio.gather(
            *(rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW) for _ in range(8))
        )

        assert sum(1 for r in results if r.allowed) <= 5

    async def test_fails_open_when_store_errors(self, clock):
        def broken_factory():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        limiter = RateLimiter(broken_factory, clock=clock)
        result = await limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        assert result.allowed is True
        assert result.remaining == 5
        assert result.reset_at == clock.now + WINDOW * 1000

    async def test_fails_open_on_timeout(self, rate_limiter, monkeypatch):
        async def slow_check(*args, **kwargs):
            await asyncio.sleep(1)

        rate_limiter.timeout_seconds = 0.01
        monkeypatch.setattr(rate_limiter, "_check", slow_check)

        result = await rate_limiter.check(KEY, max_requests=5, window_seconds=WINDOW)

        assert result.allowed is True

    async def test_cleanup_removes_old_counters(self, rate_limiter, session_factory, clock):
        await rate_limiter.check("login:ip:old", max_requests=5, window_seconds=WINDOW)
        clock.advance(2 * 3600)
        await rate_limiter.check("login:ip:new", max_requests=5, window_seconds=WINDOW)

        removed = await rate_limiter.cleanup(older_than_seconds=3600)

        assert removed == 1
        assert await _counter(session_factory, "login:ip:old") is None
        assert await _counter(session_factory, "login:ip:new") is not None


class TestHelpers:
    def test_retry_after_is_at_least_one_second(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_at=1_000)

        assert result.retry_after_seconds(now=1_000) == 1
        assert result.retry_after_seconds(now=5_000) == 1
        assert RateLimitResult(False, 0, 10_500).retry_after_seconds(now=1_000) == 10

    @pytest.mark.parametrize(
        "seconds, expected",
        [
            (252, "4 minutes 12 seconds"),
            (60, "1 minute"),
            (61, "1 minute 1 second"),
            (45, "45 seconds"),
            (0, "0 seconds"),
        ],
    )
    def test_format_retry_after(self, seconds, expected):
        assert format_retry_after(seconds) == expected

    def test_subject_key(self):
        assert subject_key("203.0.113.7") == "ip:203.0.113.7"
        assert subject_key(None) == "ip:unknown"
        assert subject_key("203.0.113.7", user_id="42") == "user:42"
