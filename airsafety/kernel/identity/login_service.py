"""
Login orchestration.

One call to ``LoginService.login`` walks a single attempt through

    RECEIVED -> RATE_CHECKED -> VALIDATED -> ACCOUNT_RESOLVED
             -> CREDENTIAL_CHECKED -> TOKEN_ISSUED

or stops in REJECTED by raising a ``LoginError``. Whichever way it ends, the
attempt produces exactly one audit entry.
"""

import asyncio
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from airsafety.config import Settings, get_settings
from airsafety.kernel.events.audit_logger import AuditLogger
from airsafety.kernel.events.event_types import ClientInfo, LoginOutcome
from airsafety.kernel.identity.errors import (
    AuthenticationFailed,
    LoginError,
    RateLimited,
    SigningFailure,
    ValidationError,
)
from airsafety.kernel.identity.identity_service import IdentityService
from airsafety.kernel.identity.jwt import JWTManager
from airsafety.kernel.identity.password import CredentialVerifier, hash_password, is_demo_login
from airsafety.kernel.identity.provisioner import AccountProvisioner
from airsafety.kernel.models.user import User
from airsafety.kernel.ratelimit.rate_limiter import RateLimiter, format_retry_after, subject_key
from airsafety.logging_config import get_logger
from airsafety.schemas.auth import MAX_EMAIL_LENGTH, LoginRequest

logger = get_logger(__name__)

RATE_LIMIT_PURPOSE = "login"


class LoginState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    VALIDATED = "validated"
    ACCOUNT_RESOLVED = "account_resolved"
    CREDENTIAL_CHECKED = "credential_checked"
    TOKEN_ISSUED = "token_issued"
    REJECTED = "rejected"


class _Verified(NamedTuple):
    user: User
    outcome: LoginOutcome
    audit: Dict[str, Any]


@dataclass
class LoginResult:
    """A successful login."""

    token: str
    expires_at: datetime
    user: User
    outcome: LoginOutcome = LoginOutcome.SUCCESS
    audit: Dict[str, Any] = field(default_factory=dict)


def _email_hint(payload: Any) -> Optional[str]:
    """Best-effort email for audit entries of attempts that fail validation."""
    if isinstance(payload, dict) and isinstance(payload.get("email"), str):
        hint = payload["email"].strip().lower()[:MAX_EMAIL_LENGTH]
        return hint or None
    return None


def _finish_detached(email: Optional[str], task: "asyncio.Task[_Verified]") -> None:
    """Collect an authentication that kept running after its caller went away."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        verified = task.result()
        logger.warning(
            "Login completed after client disconnected",
            extra={
                "email": email,
                "user_id": str(verified.user.id),
                "outcome": verified.outcome.value,
            },
        )
    elif isinstance(exc, LoginError):
        logger.warning(
            "Login rejected after client disconnected",
            extra={"email": email, "outcome": exc.outcome.value},
        )
    else:
        logger.error(
            "Login failed after client disconnected",
            exc_info=exc,
            extra={"email": email},
        )


class LoginService:
    """
    Password login for the gateway.

    Usage:
        service = LoginService(async_session_maker, rate_limiter, audit_logger)
        result = await service.login({"email": ..., "password": ...}, client)

    Account lookup, provisioning, verification and credential upgrades run in
    their own session under ``asyncio.shield``: if the caller disconnects, the
    writes still finish or roll back as a unit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        settings: Optional[Settings] = None,
        jwt_manager: Optional[JWTManager] = None,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.settings = settings or get_settings()
        self.jwt_manager = jwt_manager or JWTManager()
        self.verifier = CredentialVerifier()
        self.state = LoginState.RECEIVED

    async def login(self, payload: Any, client: ClientInfo) -> LoginResult:
        """
        Authenticate one login attempt.

        Args:
            payload: Decoded JSON request body (anything; validated here)
            client: Caller metadata for rate limiting and audit

        Returns:
            LoginResult with the signed session token

        Raises:
            LoginError: Subclass matching the rejected step
        """
        email = _email_hint(payload)
        authenticating: Optional[asyncio.Task] = None
        try:
            await self._check_rate_limit(client)
            request = self._validate(payload)
            email = request.email
            authenticating = asyncio.ensure_future(self._authenticate(request))
            verified = await asyncio.shield(authenticating)
            result = self._issue_token(verified)
        except LoginError as exc:
            self.state = LoginState.REJECTED
            await self.audit.record(exc.outcome, email=email, client=client, **exc.audit)
            raise
        except asyncio.CancelledError:
            self.state = LoginState.REJECTED
            if authenticating is not None and not authenticating.done():
                authenticating.add_done_callback(partial(_finish_detached, email))
            await self.audit.record(
                LoginOutcome.ERROR, email=email, client=client, reason="client_disconnected"
            )
            raise
        except Exception as exc:
            self.state = LoginState.REJECTED
            logger.exception("Unexpected login failure")
            await self.audit.record(
                LoginOutcome.ERROR, email=email, client=client, error=type(exc).__name__
            )
            raise LoginError() from exc

        await self.audit.record(
            result.outcome,
            email=email,
            client=client,
            user_id=str(result.user.id),
            role=result.user.role_value,
            **result.audit,
        )
        return result

    async def _check_rate_limit(self, client: ClientInfo) -> None:
        if self.settings.rate_limit_enabled:
            key = f"{RATE_LIMIT_PURPOSE}:{subject_key(client.ip_address)}"
            decision = await self.rate_limiter.check(
                key,
                max_requests=self.settings.login_rate_limit_max,
                window_seconds=self.settings.login_rate_limit_window_seconds,
            )
            if not decision.allowed:
                retry_after = decision.retry_after_seconds(self.rate_limiter.clock())
                formatted = format_retry_after(retry_after)
                raise RateLimited(
                    f"Too many login attempts. Please try again in {formatted}.",
                    body={"retryAfter": retry_after, "retryAfterFormatted": formatted},
                    headers={"Retry-After": str(retry_after)},
                    audit={"retry_after": retry_after, "rate_limit_key": key},
                )
        self.state = LoginState.RATE_CHECKED

    def _validate(self, payload: Any) -> LoginRequest:
        if not isinstance(payload, dict):
            raise ValidationError(
                "Email and password are required",
                audit={"reason": "malformed_body"},
            )
        try:
            request = LoginRequest.model_validate(payload)
        except SchemaValidationError as exc:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
            raise ValidationError(audit={"reason": "invalid_fields", "fields": fields}) from exc
        self.state = LoginState.VALIDATED
        return request

    async def _authenticate(self, request: LoginRequest) -> _Verified:
        async with self.session_factory() as session:
            identity = IdentityService(session)
            provisioner = AccountProvisioner(identity, self.settings)
            outcome = LoginOutcome.SUCCESS
            audit: Dict[str, Any] = {}

            user = await identity.get_user_by_email(request.email)
            if user is None:
                user = await provisioner.ensure_admin(request.email, request.password)
                if user is None:
                    raise AuthenticationFailed(
                        outcome=LoginOutcome.USER_NOT_FOUND,
                        audit={"reason": "no_account"},
                    )
                await session.commit()
                outcome = LoginOutcome.ADMIN_BOOTSTRAPPED
            self.state = LoginState.ACCOUNT_RESOLVED

            check = self.verifier.verify(request.password, user.credential)
            if check.insecure_fallback:
                audit["insecure_fallback"] = True

            if check.ok:
                if check.should_upgrade:
                    audit["credential_upgraded"] = await self._upgrade_credential(
                        user, request.password
                    )
            elif is_demo_login(request.email, request.password, self.settings):
                logger.warning("Demo login accepted", extra={"email": request.email})
                audit["demo_login"] = True
            elif await provisioner.self_heal(user, request.password):
                await session.commit()
                outcome = LoginOutcome.ADMIN_SELF_HEALED
            else:
                raise AuthenticationFailed(
                    audit={"reason": "password_mismatch", "user_id": str(user.id)},
                )

            self.state = LoginState.CREDENTIAL_CHECKED
            return _Verified(user, outcome, audit)

    async def _upgrade_credential(self, user: User, password: str) -> bool:
        """
        Replace a legacy plaintext credential with a bcrypt hash.

        Best-effort: a failed upgrade is logged and the login continues.
        Runs in its own transaction and only applies while the row still holds
        the plaintext value that was just verified.
        """
        legacy = user.credential
        new_credential = hash_password(password)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    upgraded = await IdentityService(session).update_credential(
                        user.id, new_credential, expected_credential=legacy
                    )
        except SQLAlchemyError as exc:
            logger.warning(
                "Credential upgrade failed",
                extra={"user_id": str(user.id), "error": type(exc).__name__},
            )
            return False

        if upgraded:
            set_committed_value(user, "credential", new_credential)
            logger.info("Upgraded legacy plaintext credential", extra={"user_id": str(user.id)})
        return upgraded

    def _issue_token(self, verified: _Verified) -> LoginResult:
        user = verified.user
        try:
            token, expires_at = self.jwt_manager.create_session_token(
                user_id=user.id,
                email=user.email,
                role=user.role_value,
            )
        except SigningFailure as exc:
            exc.audit.setdefault("user_id", str(user.id))
            raise
        self.state = LoginState.TOKEN_ISSUED
        return LoginResult(
            token=token,
            expires_at=expires_at,
            user=user,
            outcome=verified.outcome,
            audit=verified.audit,
        )
