"""
Database seeding utility.
Creates a development user from SEED_USERNAME / SEED_PASSWORD on first run.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowstream.config import settings
from flowstream.database import User
from flowstream.utils.auth import hash_password

logger = logging.getLogger(__name__)


async def seed_from_env(session: AsyncSession) -> dict:
    """
    Create the seed user if configured and missing.

    Returns:
        {"status": "skipped" | "exists" | "success", ...}
    """
    if not settings.seed_username or not settings.seed_password:
        return {"status": "skipped", "message": "No seed user configured"}

    result = await session.execute(
        select(User).where(User.username == settings.seed_username)
    )
    if result.scalar_one_or_none():
        return {"status": "exists", "username": settings.seed_username}

    session.add(
        User(
            username=settings.seed_username,
            password_hash=hash_password(settings.seed_password),
            display_name=settings.seed_username,
        )
    )
    await session.commit()
    logger.info(f"Seed user '{settings.seed_username}' created")
    return {"status": "success", "username": settings.seed_username}
