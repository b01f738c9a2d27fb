#!/usr/bin/env python3
"""
Admin seeding script.

Imported apps are owned by the first admin user's developer profile, so an
import job fails until one exists. This script creates that user (and its
verified developer profile) if missing.

Usage:
    python scripts/seed_admin.py admin@example.com [Name]
    python scripts/seed_admin.py --list
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from catalog_ingest.db.models import Base, Developer, User
from catalog_ingest.db.session import AsyncSessionLocal, engine


async def seed_admin(email: str, name: str | None = None):
    """Create the admin user and developer profile if they do not exist."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with AsyncSessionLocal() as db:
            result = await db.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(email=email, name=name, is_admin=True)
                db.add(user)
                await db.flush()
                print(f"  [ADD] admin user {email}")
            elif not user.is_admin:
                user.is_admin = True
                print(f"  [UPDATE] {email} promoted to admin")
            else:
                print(f"  [SKIP] {email} (already admin)")

            result = await db.execute(select(Developer).where(Developer.user_id == user.id))
            if result.scalar_one_or_none() is None:
                db.add(Developer(user_id=user.id, verified=True))
                print(f"  [ADD] developer profile for {email}")

            await db.commit()
            print("\nSeeding complete!")
    except SQLAlchemyError as e:
        print(f"\nError: Database operation failed: {e}")
        print("Make sure the database is running and DATABASE_URL is correct.")
        sys.exit(1)
    finally:
        await engine.dispose()


async def list_admins():
    """List admin users."""
    try:
        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(User).where(User.is_admin.is_(True)).order_by(User.created_at)
            )
            admins = result.scalars().all()
            if not admins:
                print("No admin users found.")
                return
            print(f"\nAdmin users ({len(admins)} total):\n")
            for user in admins:
                print(f"  {user.email} ({user.id})")
    except SQLAlchemyError as e:
        print(f"Error: Failed to list admins: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1] == "--help":
        print("Usage: python seed_admin.py EMAIL [NAME]")
        print("       python seed_admin.py --list")
    elif sys.argv[1] == "--list":
        asyncio.run(list_admins())
    else:
        asyncio.run(seed_admin(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None))
