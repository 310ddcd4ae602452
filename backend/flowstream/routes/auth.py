"""
User login/logout routes.
Tokens returned here are sent as `Authorization: Bearer <token>` on every
stream and execution request.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowstream.config import settings
from flowstream.database import User, get_session
from flowstream.utils.auth import (
    create_user_session,
    get_token_from_request,
    invalidate_token,
    require_user,
    verify_password,
)
from flowstream.utils.exceptions import raise_forbidden, raise_unauthorized
from flowstream.utils.time import to_iso

logger = logging.getLogger(__name__)

router = APIRouter()


class UserResponse(BaseModel):
    id: int
    username: str
    display_name: Optional[str]
    is_active: bool
    created_at: str

    @classmethod
    def from_db(cls, db_user: User) -> "UserResponse":
        return cls(
            id=db_user.id,
            username=db_user.username,
            display_name=db_user.display_name,
            is_active=db_user.is_active,
            created_at=to_iso(db_user.created_at),
        )


class UserLoginRequest(BaseModel):
    username: str
    password: str


class UserLoginResponse(BaseModel):
    token: str
    expires_in: int
    user: UserResponse


@router.post("/auth/login", response_model=UserLoginResponse)
async def login(
    request: UserLoginRequest,
    session: AsyncSession = Depends(get_session),
):
    """Authenticate a user and return a session token."""
    stmt = select(User).where(User.username == request.username)
    result = await session.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not verify_password(request.password, user.password_hash):
        raise_unauthorized("Invalid username or password")

    if not user.is_active:
        raise_forbidden("Account is disabled")

    token = await create_user_session(user, session)
    logger.info(f"User logged in: {user.username}")

    return UserLoginResponse(
        token=token,
        expires_in=settings.user_token_expiry_hours * 3600,
        user=UserResponse.from_db(user),
    )


@router.post("/auth/logout")
async def logout(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Logout current user session."""
    token = get_token_from_request(request)
    if token:
        await invalidate_token(token, session)

    return {"message": "Logged out successfully"}


@router.get("/auth/me", response_model=UserResponse)
async def me(user: User = Depends(require_user)):
    return UserResponse.from_db(user)
