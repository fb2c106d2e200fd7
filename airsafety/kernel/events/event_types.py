"""
Audit event definitions using Pydantic for validation.

These are the payload schemas sent to the audit sink.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LoginOutcome(str, Enum):
    """Outcome tag recorded for every login attempt."""

    SUCCESS = "success"
    ADMIN_BOOTSTRAPPED = "admin_bootstrapped"
    ADMIN_SELF_HEALED = "admin_self_healed"
    VALIDATION_FAILED = "validation_failed"
    RATE_LIMITED = "rate_limited"
    USER_NOT_FOUND = "user_not_found"
    INVALID_PASSWORD = "invalid_password"
    PROVISIONING_FAILED = "provisioning_failed"
    JWT_SIGNING_FAILED = "jwt_signing_failed"
    ERROR = "error"


@dataclass(frozen=True)
class ClientInfo:
    """Caller metadata taken from the request headers."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LoginAuditEvent(BaseModel):
    """
    One login attempt.

    Outcome-specific fields (reason, error, retry_after, user_id, ...) are
    accepted as extra keys and serialized alongside the fixed ones.
    """

    model_config = ConfigDict(extra="allow")

    event: str = "login"
    timestamp: str = Field(default_factory=_utcnow_iso)
    outcome: LoginOutcome
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
