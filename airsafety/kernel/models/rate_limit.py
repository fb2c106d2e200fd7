"""
Fixed-window rate limit counters.

One row per ``{purpose}:{subject}`` key. Timestamps are epoch milliseconds so
window arithmetic happens in SQL without timezone handling.
"""

from sqlalchemy import BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from airsafety.kernel.models.base import Base


class RateLimitCounter(Base):
    """Attempt counter for one key within its current window."""

    __tablename__ = "rate_limit"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    reset_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    created_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_rate_limit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitCounter {self.key} count={self.count}>"
