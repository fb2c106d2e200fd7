"""
Administrator provisioning for the login gateway.

The designated admin account is created on first login (bootstrap) and its
credential is repaired when the deployed admin password and the stored hash
have drifted apart (self-heal).
"""

import secrets
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from airsafety.config import Settings
from airsafety.kernel.identity.errors import ProvisioningFailure
from airsafety.kernel.identity.identity_service import IdentityService, normalize_email
from airsafety.kernel.identity.password import hash_password
from airsafety.kernel.models.user import User, UserRole
from airsafety.logging_config import get_logger

logger = get_logger(__name__)


class AccountProvisioner:
    """
    Ensures the designated administrator account exists and can log in.

    Never creates or repairs non-administrator accounts.
    """

    def __init__(self, identity: IdentityService, settings: Settings):
        self.identity = identity
        self.settings = settings

    @property
    def admin_email(self) -> str:
        return normalize_email(self.settings.admin_email or "")

    def is_admin_email(self, email: str) -> bool:
        return bool(self.admin_email) and normalize_email(email) == self.admin_email

    async def ensure_admin(self, attempted_email: str, attempted_password: str) -> Optional[User]:
        """
        Create the administrator account for a login whose email has no account.

        Applies when the email is the designated admin email, or when the users
        table is empty (first login on a fresh deployment).

        Returns:
            The created (or concurrently created) account, or None when
            provisioning does not apply

        Raises:
            ProvisioningFailure: If the insert fails for any other reason
        """
        try:
            if not self.is_admin_email(attempted_email) and await self.identity.count_users() > 0:
                return None

            password = self.settings.admin_password or attempted_password
            user = await self.identity.create_user(
                email=attempted_email,
                password=password,
                first_name="Admin",
                last_name="User",
                role=UserRole.ADMINISTRATOR,
            )
        except IntegrityError:
            # A concurrent login created it first. Nothing else is pending in
            # this session, so rolling back only discards the failed insert.
            await self.identity.session.rollback()
            logger.info("Administrator account already provisioned", extra={"email": attempted_email})
            return await self.identity.get_user_by_email(attempted_email)
        except SQLAlchemyError as exc:
            logger.exception("Administrator bootstrap failed")
            raise ProvisioningFailure(audit={"error": type(exc).__name__}) from exc

        logger.warning(
            "Administrator account bootstrapped from login",
            extra={"email": user.email, "user_id": str(user.id)},
        )
        return user

    async def self_heal(self, user: User, attempted_password: str) -> bool:
        """
        Repair the admin credential after a failed password check.

        Only the designated admin account is repaired, only when an admin
        password is configured, and only when the attempt used that password.
        The credential is replaced in one UPDATE statement.

        Returns:
            True if the credential was overwritten and the login may proceed
        """
        if not user.is_admin or not self.is_admin_email(user.email):
            return False
        if not self.settings.admin_password:
            return False
        if not secrets.compare_digest(
            attempted_password.encode("utf-8"),
            self.settings.admin_password.encode("utf-8"),
        ):
            return False

        new_credential = hash_password(self.settings.admin_password)
        try:
            updated = await self.identity.update_credential(user.id, new_credential)
        except SQLAlchemyError as exc:
            logger.exception("Administrator credential repair failed")
            raise ProvisioningFailure(audit={"error": type(exc).__name__}) from exc

        if not updated:
            return False
        set_committed_value(user, "credential", new_credential)
        logger.warning(
            "Administrator credential overwritten from configured password",
            extra={"email": user.email, "user_id": str(user.id)},
        )
        return True
