"""
Authentication schemas.
"""

import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from airsafety.kernel.models.user import User

MAX_EMAIL_LENGTH = 255
MAX_PASSWORD_LENGTH = 256


class LoginRequest(BaseModel):
    """User login request."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email", mode="before")
    @classmethod
    def sanitize_email(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        v = v.replace("<", "").replace(">", "").strip().lower()
        if len(v) > MAX_EMAIL_LENGTH:
            raise ValueError(f"Email must be at most {MAX_EMAIL_LENGTH} characters")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()


class UserResponse(BaseModel):
    """Public view of an account. Never includes the credential."""

    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    email: str
    first_name: Optional[str] = Field(None, serialization_alias="firstName")
    last_name: Optional[str] = Field(None, serialization_alias="lastName")
    role: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role_value,
        )


class LoginResponse(BaseModel):
    """Successful login."""

    token: str
    user: UserResponse
