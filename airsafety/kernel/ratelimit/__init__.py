"""
Rate limiting for the login gateway.
"""

from airsafety.kernel.ratelimit.rate_limiter import (
    RateLimiter,
    RateLimitResult,
    format_retry_after,
    now_ms,
    subject_key,
)

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "format_retry_after",
    "now_ms",
    "subject_key",
]
