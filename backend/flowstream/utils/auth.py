"""
Authentication utilities: password hashing and bearer-token user sessions.
"""

import bcrypt
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowstream.config import settings
from flowstream.database import User, UserSession, get_session
from flowstream.utils.exceptions import raise_unauthorized
from flowstream.utils.time import utcnow

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt with automatic salt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a password against a stored bcrypt hash (constant-time comparison)."""
    try:
        return bcrypt.checkpw(password.encode(), stored_hash.encode())
    except (ValueError, TypeError):
        return False


def generate_token() -> str:
    """Generate a secure random token."""
    return secrets.token_hex(32)


async def create_user_session(user: User, session: AsyncSession) -> str:
    """Create a session for ``user`` and return its bearer token."""
    token = generate_token()
    expires_at = utcnow() + timedelta(hours=settings.user_token_expiry_hours)
    session.add(UserSession(user_id=user.id, token=token, expires_at=expires_at))
    await session.commit()
    return token


async def invalidate_token(token: str, session: AsyncSession) -> bool:
    """Invalidate (delete) a user session token."""
    stmt = delete(UserSession).where(UserSession.token == token)
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount > 0


def get_token_from_request(request: Request) -> Optional[str]:
    """Extract the bearer token from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_user_from_token(token: str, session: AsyncSession) -> Optional[User]:
    """
    Look up active user by session token.

    Returns User if token is valid and user is active, None otherwise.
    """
    stmt = select(UserSession).where(
        UserSession.token == token, UserSession.expires_at > utcnow()
    )
    result = await session.execute(stmt)
    user_session = result.scalar_one_or_none()

    if not user_session:
        return None

    stmt = select(User).where(User.id == user_session.user_id, User.is_active == True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_user(
    request: Request, session: AsyncSession = Depends(get_session)
) -> User:
    """Dependency to require user authentication."""
    token = get_token_from_request(request)

    if not token:
        raise_unauthorized("Missing authentication token")

    user = await get_user_from_token(token, session)

    if not user:
        raise_unauthorized("Invalid or expired token")

    return user
