"""
Identity Core - accounts, credentials, provisioning and session tokens.
"""

from airsafety.kernel.identity.password import (
    CredentialCheck,
    CredentialVerifier,
    PasswordHasher,
    hash_password,
    verify_password,
)
from airsafety.kernel.identity.jwt import JWTManager, SessionTokenPayload
from airsafety.kernel.identity.identity_service import IdentityService
from airsafety.kernel.identity.provisioner import AccountProvisioner

__all__ = [
    "AccountProvisioner",
    "CredentialCheck",
    "CredentialVerifier",
    "IdentityService",
    "JWTManager",
    "PasswordHasher",
    "SessionTokenPayload",
    "hash_password",
    "verify_password",
]
