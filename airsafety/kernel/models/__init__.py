"""
Kernel Data Models

SQLAlchemy models owned by the login gateway: accounts and rate limit counters.
"""

from airsafety.kernel.models.base import Base, TimestampMixin, generate_uuid
from airsafety.kernel.models.user import User, UserRole
from airsafety.kernel.models.rate_limit import RateLimitCounter

__all__ = [
    "Base",
    "TimestampMixin",
    "generate_uuid",
    "User",
    "UserRole",
    "RateLimitCounter",
]
