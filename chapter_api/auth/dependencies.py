"""
Auth Dependencies

FastAPI dependencies identifying the caller.

Sign-in happens upstream; the gateway forwards the member's user id as the
bearer credential. Here we only check that it names an active user.
"""

from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.core.database import get_db
from chapter_api.meetings.models import User

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def resolve_user(db: AsyncSession, token: str | None) -> User:
    """Look up the active user a credential refers to."""
    if not token:
        raise _unauthorized("Authentication required")
    try:
        user_id = UUID(token)
    except ValueError:
        raise _unauthorized("Invalid credentials") from None

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("Invalid credentials")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get current authenticated user."""
    return await resolve_user(db, credentials.credentials if credentials else None)
