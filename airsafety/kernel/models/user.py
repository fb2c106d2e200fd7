"""
User model for identity management.
"""

import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Index, String, func, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from airsafety.kernel.models.base import Base, TimestampMixin, generate_uuid


class UserRole(str, Enum):
    """User roles in the system."""
    CAPTAIN = "captain"
    SAFETY_OFFICER = "safety_officer"
    ADMINISTRATOR = "administrator"


class User(Base, TimestampMixin):
    """
    User account model.

    ``credential`` holds either a bcrypt hash or, for accounts imported from
    the legacy store, the plaintext password. Plaintext values are replaced by
    a hash the first time the account logs in successfully.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    credential: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    first_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    last_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    role: Mapped[UserRole] = mapped_column(
        String(50),
        default=UserRole.CAPTAIN,
        nullable=False,
    )

    @property
    def role_value(self) -> str:
        # role may be enum or str when loaded from SQLite
        return self.role.value if hasattr(self.role, "value") else str(self.role)

    @property
    def is_admin(self) -> bool:
        return self.role_value == UserRole.ADMINISTRATOR.value

    def __repr__(self) -> str:
        return f"<User {self.email}>"


# Case-insensitive uniqueness
Index("uq_users_email_lower", func.lower(User.email), unique=True)
