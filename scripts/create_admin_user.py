"""
Create or reset an account in the users table.

Usage:
    python scripts/create_admin_user.py admin@airline.com 'S3cure-pass' --role administrator
    python scripts/create_admin_user.py pilot@airline.com 'pass' --reset
"""

import argparse
import asyncio
import sys

sys.path.insert(0, ".")

from airsafety.database import async_session_maker, close_db, init_db  # noqa: E402
from airsafety.kernel.identity.identity_service import IdentityService  # noqa: E402
from airsafety.kernel.identity.password import hash_password  # noqa: E402
from airsafety.kernel.models.user import UserRole  # noqa: E402


async def main(args: argparse.Namespace) -> int:
    await init_db()
    try:
        async with async_session_maker() as session:
            identity = IdentityService(session)
            user = await identity.get_user_by_email(args.email)

            if user is not None:
                if not args.reset:
                    print(f"User {user.email} already exists (use --reset to set a new password)")
                    return 1
                await identity.update_credential(user.id, hash_password(args.password))
                await session.commit()
                print(f"Updated credential for {user.email}")
                return 0

            user = await identity.create_user(
                email=args.email,
                password=args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                role=UserRole(args.role),
            )
            await session.commit()
            print(f"Created {user.role_value} {user.email} ({user.id})")
            return 0
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--role", default=UserRole.ADMINISTRATOR.value, choices=[r.value for r in UserRole])
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument("--reset", action="store_true", help="Overwrite the password of an existing account")
    sys.exit(asyncio.run(main(parser.parse_args())))
