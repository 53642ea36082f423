#!/usr/bin/env python3
"""
Promote an existing user to admin by email (defaults to FIRST_ADMIN_EMAIL in .env).
The user must have signed in once so that POST /api/auth/sync created their row.
Run from backend/: python -m scripts.create_admin [email]
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main():
    from app.config import get_settings
    from app.database import async_session
    from app.models import User, UserRole
    from sqlalchemy import select

    settings = get_settings()
    email = (sys.argv[1] if len(sys.argv) > 1 else settings.first_admin_email).strip().lower()
    if not email:
        print("Error: pass an email or set FIRST_ADMIN_EMAIL in .env")
        sys.exit(1)

    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if not user:
            print(f"No user with email {email}. They must sign in once before promotion.")
            sys.exit(1)
        if user.role == UserRole.ADMIN.value:
            print(f"{email} is already an admin.")
            sys.exit(0)

        user.role = UserRole.ADMIN.value
        await db.commit()
        print(f"Promoted {email} to admin")


if __name__ == "__main__":
    asyncio.run(main())
