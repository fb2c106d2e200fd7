"""
Login gateway exceptions.

Each rejected login path raises exactly one of these. The HTTP layer renders
``status_code`` and ``message`` (plus ``body``/``headers`` when present); the
``outcome`` tag is what the audit entry records for the attempt.
"""

from typing import Any, Dict, Optional

from airsafety.kernel.events.event_types import LoginOutcome

GENERIC_FAILURE_MESSAGE = "Login failed. Please try again later."
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class LoginError(Exception):
    """Base class for every rejected login."""

    status_code: int = 500
    outcome: LoginOutcome = LoginOutcome.ERROR
    default_message: str = GENERIC_FAILURE_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        audit: Optional[Dict[str, Any]] = None,
        outcome: Optional[LoginOutcome] = None,
    ):
        self.message = message or self.default_message
        if outcome is not None:
            self.outcome = outcome
        self.body = body or {}
        self.headers = headers or {}
        # Outcome-specific fields for the audit entry, never sent to the caller
        self.audit = audit or {}
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        return {"message": self.message, **self.body}


class ValidationError(LoginError):
    """Malformed login request."""

    status_code = 400
    outcome = LoginOutcome.VALIDATION_FAILED
    default_message = "Invalid input data"


class RateLimited(LoginError):
    """Too many attempts for this caller in the current window."""

    status_code = 429
    outcome = LoginOutcome.RATE_LIMITED
    default_message = "Too many requests. Please try again later."


class AuthenticationFailed(LoginError):
    """
    Unknown account or wrong password.

    Both cases share one message so the response cannot be used to discover which
    emails have accounts; ``outcome`` keeps them apart in the audit trail.
    """

    status_code = 401
    outcome = LoginOutcome.INVALID_PASSWORD
    default_message = INVALID_CREDENTIALS_MESSAGE


class ProvisioningFailure(LoginError):
    """The administrator account could not be created or repaired."""

    status_code = 500
    outcome = LoginOutcome.PROVISIONING_FAILED


class SigningFailure(LoginError):
    """The session token could not be signed."""

    status_code = 500
    outcome = LoginOutcome.JWT_SIGNING_FAILED


class StoreUnavailable(Exception):
    """A backing store call failed or timed out."""
