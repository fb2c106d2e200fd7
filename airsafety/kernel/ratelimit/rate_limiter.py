"""
Fixed-window rate limiting backed by the relational store.

Every state change of a counter is one conditional statement, so concurrent
requests under the same key cannot both claim the last free slot:

- window elapsed (or the configured window shrank): reset to count=1
- room left: ``count = count + 1 WHERE count < max``
- no row yet: INSERT, retried once if another request inserted first

Store failures and timeouts fail open.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airsafety.kernel.identity.errors import StoreUnavailable
from airsafety.kernel.models.rate_limit import RateLimitCounter
from airsafety.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def subject_key(ip_address: Optional[str], user_id: Optional[str] = None) -> str:
    """Rate limit subject: the authenticated user when known, else the caller IP."""
    if user_id:
        return f"user:{user_id}"
    return f"ip:{ip_address or 'unknown'}"


def format_retry_after(seconds: int) -> str:
    """Human-readable wait time, e.g. "4 minutes 12 seconds"."""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    parts = []
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    if secs or not minutes:
        parts.append(f"{secs} second{'s' if secs != 1 else ''}")
    return " ".join(parts)


@dataclass(frozen=True)
class RateLimitResult:
    """Decision for one attempt. ``reset_at`` is epoch milliseconds."""

    allowed: bool
    remaining: int
    reset_at: int

    def retry_after_seconds(self, now: int) -> int:
        """Whole seconds until the window resets; at least 1."""
        return max(1, math.ceil((self.reset_at - now) / 1000))


class RateLimiter:
    """
    Per-key attempt counters in fixed windows.

    Usage:
        limiter = RateLimiter(async_session_maker)
        result = await limiter.check("login:ip:203.0.113.7", max_requests=5, window_seconds=300)
        if not result.allowed:
            ...reject with 429

    Each check runs in its own short transaction, so counters persist even when
    the request that triggered them rolls back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 2.0,
        clock: Clock = now_ms,
    ):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def check(self, key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        now = self.clock()
        window_ms = window_seconds * 1000
        try:
            return await asyncio.wait_for(
                self._check(key, max_requests, window_ms, now),
                timeout=self.timeout_seconds,
            )
        except (SQLAlchemyError, OSError, asyncio.TimeoutError, StoreUnavailable) as exc:
            logger.error(
                "Rate limit store unavailable, allowing request",
                extra={"rate_limit_key": key, "error": type(exc).__name__},
            )
            return RateLimitResult(allowed=True, remaining=max_requests, reset_at=now + window_ms)

    async def _check(self, key: str, max_requests: int, window_ms: int, now: int) -> RateLimitResult:
        for _ in range(2):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await self._apply(session, key, max_requests, window_ms, now)
            except IntegrityError:
                # Lost the race to create the row; it exists now, so go again
                continue
        raise StoreUnavailable(f"could not create rate limit counter {key}")

    async def _apply(
        self,
        session: AsyncSession,
        key: str,
        max_requests: int,
        window_ms: int,
        now: int,
    ) -> RateLimitResult:
        fresh_reset_at = now + window_ms
        returning = (RateLimitCounter.count, RateLimitCounter.reset_at)

        # Window elapsed, or stored reset time is beyond what the current
        # window size allows (window was shortened): start a new window.
        reset = await session.execute(
            update(RateLimitCounter)
            .where(
                RateLimitCounter.key == key,
                or_(
                    RateLimitCounter.reset_at <= now,
                    RateLimitCounter.reset_at > fresh_reset_at,
                ),
            )
            .values(count=1, reset_at=fresh_reset_at, created_at=now)
            .returning(*returning)
            .execution_options(synchronize_session=False)
        )
        if reset.one_or_none() is not None:
            return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=fresh_reset_at)

        bumped = (
            await session.execute(
                update(RateLimitCounter)
                .where(
                    RateLimitCounter.key == key,
                    RateLimitCounter.count < max_requests,
                )
                .values(count=RateLimitCounter.count + 1)
                .returning(*returning)
                .execution_options(synchronize_session=False)
            )
        ).one_or_none()
        if bumped is not None:
            count, reset_at = bumped
            return RateLimitResult(allowed=True, remaining=max(0, max_requests - count), reset_at=reset_at)

        existing_reset_at = (
            await session.execute(
                select(RateLimitCounter.reset_at).where(RateLimitCounter.key == key)
            )
        ).scalar_one_or_none()
        if existing_reset_at is not None:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=min(existing_reset_at, fresh_reset_at),
            )

        session.add(RateLimitCounter(key=key, count=1, reset_at=fresh_reset_at, created_at=now))
        await session.flush()
        return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=fresh_reset_at)

    async def cleanup(self, older_than_seconds: int = 3600) -> int:
        """
        Delete counters whose window started more than ``older_than_seconds`` ago.

        Returns:
            Number of rows removed (0 when the store is unavailable)
        """
        cutoff = self.clock() - older_than_seconds * 1000
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(RateLimitCounter)
                        .where(RateLimitCounter.created_at < cutoff)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as exc:
            logger.error("Rate limit cleanup failed", extra={"error": type(exc).__name__})
            return 0
        return result.rowcount or 0
