"""
JWT session token management.

Tokens are HS256-signed and stateless: there is no server-side revocation
list, so a token stays valid until ``exp``.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JOSEError, JWTError, jwt
from pydantic import BaseModel

from airsafety.config import get_settings
from airsafety.kernel.identity.errors import SigningFailure
from airsafety.logging_config import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
_SECRET_FILLER = "airsafety-session-secret-filler-"

SESSION_TOKEN_TYPE = "session"


class SessionTokenPayload(BaseModel):
    """JWT session token payload."""

    sub: str  # User ID
    email: str
    role: str
    exp: datetime
    iat: datetime
    jti: str


def ensure_secret_length(secret: Optional[str]) -> str:
    """
    Pad a missing or short signing secret up to MIN_SECRET_LENGTH.

    A padded secret is guessable; this keeps logins working on a misconfigured
    deployment and logs an error on every padding.
    """
    secret = secret or ""
    if len(secret) >= MIN_SECRET_LENGTH:
        return secret
    logger.error(
        "Signing secret is missing or shorter than %d characters; padding it. "
        "Set SECRET_KEY to a random value of at least %d characters.",
        MIN_SECRET_LENGTH,
        MIN_SECRET_LENGTH,
        extra={"secret_length": len(secret)},
    )
    filler = _SECRET_FILLER * (MIN_SECRET_LENGTH // len(_SECRET_FILLER) + 1)
    return (secret + filler)[:MIN_SECRET_LENGTH]


class JWTManager:
    """
    Session token creation and verification.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        expire_days: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = ensure_secret_length(secret_key or settings.secret_key)
        self.algorithm = algorithm or settings.algorithm
        self.expire_days = expire_days or settings.session_token_expire_days

    def create_session_token(
        self,
        user_id: uuid.UUID,
        email: str,
        role: str,
        expires_delta: Optional[timedelta] = None,
    ) -> tuple[str, datetime]:
        """
        Create a signed session token.

        Returns:
            Tuple of (token, expiration_datetime)

        Raises:
            SigningFailure: If the token could not be encoded
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(days=self.expire_days))

        payload = {
            "sub": str(user_id),
            "userId": str(user_id),
            "email": email,
            "role": role,
            "exp": expire,
            "iat": now,
            "jti": str(uuid.uuid4()),
            "type": SESSION_TOKEN_TYPE,
        }

        try:
            token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        except (JOSEError, TypeError, ValueError) as exc:
            raise SigningFailure(audit={"error": type(exc).__name__}) from exc
        return token, expire

    def verify_session_token(self, token: str) -> Optional[SessionTokenPayload]:
        """
        Verify and decode a session token.

        Returns:
            SessionTokenPayload if valid, None otherwise
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
            )
        except JWTError:
            return None

        if payload.get("type") != SESSION_TOKEN_TYPE:
            return None

        try:
            return SessionTokenPayload(
                sub=payload["sub"],
                email=payload["email"],
                role=payload["role"],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                jti=payload["jti"],
            )
        except (KeyError, TypeError, ValueError):
            return None
