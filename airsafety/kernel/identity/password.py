"""
Password hashing and credential verification using bcrypt.

Stored credentials come in two shapes: bcrypt hashes (``$2a$``/``$2b$``/``$2y$``)
and plaintext passwords left behind by the legacy user store. Plaintext
credentials still verify, but the caller is told to replace them with a hash.
"""

import re
import secrets
from dataclasses import dataclass
from typing import Optional

import bcrypt

from airsafety.config import Settings
from airsafety.logging_config import get_logger

logger = get_logger(__name__)

# Number of rounds for bcrypt hashing (12 is secure default)
BCRYPT_ROUNDS = 12

_BCRYPT_PREFIX = re.compile(r"^\$2[aby]\$\d{2}\$")


class PasswordHasher:
    """Password hashing service."""

    @staticmethod
    def _truncate_password(password: str) -> bytes:
        """
        Truncate password to 72 bytes (bcrypt limit) and encode.

        bcrypt only uses the first 72 bytes of a password.
        """
        return password.encode('utf-8')[:72]

    @staticmethod
    def hash(password: str) -> str:
        """
        Hash a password using bcrypt.

        Args:
            password: Plain text password

        Returns:
            Hashed password string
        """
        pwd_bytes = PasswordHasher._truncate_password(password)
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        hashed = bcrypt.hashpw(pwd_bytes, salt)
        return hashed.decode('utf-8')

    @staticmethod
    def is_hashed(credential: Optional[str]) -> bool:
        """True when the stored credential looks like a bcrypt hash."""
        return bool(credential) and _BCRYPT_PREFIX.match(credential) is not None

    @staticmethod
    def check(plain_password: str, hashed_password: str) -> bool:
        """
        Verify a password against a bcrypt hash.

        Unlike ``verify_password`` this lets bcrypt errors propagate, so callers
        can tell a wrong password apart from a broken hash or backend.
        """
        pwd_bytes = PasswordHasher._truncate_password(plain_password)
        return bcrypt.checkpw(pwd_bytes, hashed_password.encode('utf-8'))

    @staticmethod
    def verify(plain_password: str, hashed_password: str) -> bool:
        """
        Verify a password against its hash.

        Returns:
            True if password matches, False otherwise
        """
        try:
            return PasswordHasher.check(plain_password, hashed_password)
        except (ValueError, TypeError):
            return False

    @staticmethod
    def needs_rehash(hashed_password: str) -> bool:
        """
        Check if a password hash needs to be upgraded.

        Currently checks if the hash uses a different number of rounds.
        """
        # Format: $2b$XX$... where XX is the rounds
        parts = hashed_password.split('$')
        if len(parts) < 3 or not parts[2].isdigit():
            return True
        return int(parts[2]) != BCRYPT_ROUNDS


@dataclass(frozen=True)
class CredentialCheck:
    """Outcome of comparing a supplied password with a stored credential."""

    ok: bool
    should_upgrade: bool = False
    insecure_fallback: bool = False


def _constant_time_equals(left: str, right: str) -> bool:
    return secrets.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class CredentialVerifier:
    """
    Checks a supplied password against a stored credential.

    Usage:
        check = CredentialVerifier().verify(password, user.credential)
        if check.ok and check.should_upgrade:
            ...replace user.credential with PasswordHasher.hash(password)
    """

    def verify(self, supplied_password: str, stored_credential: Optional[str]) -> CredentialCheck:
        if not stored_credential or not supplied_password:
            return CredentialCheck(ok=False)

        if PasswordHasher.is_hashed(stored_credential):
            try:
                return CredentialCheck(ok=PasswordHasher.check(supplied_password, stored_credential))
            except Exception as exc:
                # bcrypt itself failed, not the comparison. Keep genuine users
                # able to log in, but mark the attempt for the audit trail.
                logger.warning(
                    "bcrypt comparison failed, falling back to direct comparison",
                    extra={"error": type(exc).__name__},
                )
                return CredentialCheck(
                    ok=_constant_time_equals(supplied_password, stored_credential),
                    insecure_fallback=True,
                )

        # Legacy plaintext credential
        matched = _constant_time_equals(supplied_password, stored_credential)
        return CredentialCheck(ok=matched, should_upgrade=matched)


def is_demo_login(email: str, password: str, settings: Settings) -> bool:
    """Demo credentials, accepted only outside production."""
    if settings.is_production:
        return False
    if not settings.demo_email or not settings.demo_password:
        return False
    return (
        email == settings.demo_email.strip().lower()
        and _constant_time_equals(password, settings.demo_password)
    )


# Convenience functions
def hash_password(password: str) -> str:
    """Hash a password."""
    return PasswordHasher.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password."""
    return PasswordHasher.verify(plain_password, hashed_password)
