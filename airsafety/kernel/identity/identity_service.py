"""
Identity service: the account store used by the login gateway.
"""

import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from airsafety.kernel.models.user import User, UserRole
from airsafety.kernel.identity.password import hash_password


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityService:
    """
    Account reads and writes.

    Emails are stored normalized and looked up case-insensitively.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        """Get a user by ID."""
        query = select(User).where(User.id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Get a user by email."""
        query = select(User).where(func.lower(User.email) == normalize_email(email))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def count_users(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(User))
        return int(result.scalar_one())

    async def create_user(
        self,
        email: str,
        password: Optional[str],
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: UserRole = UserRole.CAPTAIN,
        hashed: bool = False,
    ) -> User:
        """
        Insert a new account.

        Args:
            email: Account email (normalized before storing)
            password: Plain text password, or an existing hash when ``hashed``
            first_name: Optional first name
            last_name: Optional last name
            role: Account role (default: captain)
            hashed: Store ``password`` as-is instead of hashing it

        Returns:
            The created User, flushed so its id is populated

        Raises:
            sqlalchemy.exc.IntegrityError: If the email is already registered
        """
        credential = password if hashed or password is None else hash_password(password)
        user = User(
            email=normalize_email(email),
            credential=credential,
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def update_credential(
        self,
        user_id: uuid.UUID,
        new_credential: str,
        expected_credential: Optional[str] = None,
    ) -> bool:
        """
        Replace an account's stored credential in a single UPDATE.

        When ``expected_credential`` is given the row only changes if it still
        holds that value, so a concurrent password change is never overwritten.

        Returns:
            True if a row was updated
        """
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credential=new_credential)
            .execution_options(synchronize_session=False)
        )
        if expected_credential is not None:
            stmt = stmt.where(User.credential == expected_credential)
        result = await self.session.execute(stmt)
        return result.rowcount == 1
