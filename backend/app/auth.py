"""
Authentication & Authorization — bearer identity tokens from the external provider.

Include: Authorization: Bearer <jwt>. The token's `sub` maps to users.external_id;
the user row must already exist (POST /api/auth/sync provisions it).
Suspended accounts are rejected on every route except the identity ones.
"""

import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import User
from app.services.auth_service import decode_access_token, get_user_by_external_id

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_token_claims(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> dict:
    """Verified token payload; 401 if the header is missing or the token is invalid."""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )
    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token. Please log in again.")
    return payload


async def get_current_user_any_status(
    claims: dict = Depends(get_token_claims),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller's User row, suspended or not."""
    user = await get_user_by_external_id(db, claims["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found. Sync your account first.")
    return user


async def get_current_user(user: User = Depends(get_current_user_any_status)) -> User:
    """Require an active (non-suspended) account."""
    if user.is_suspended:
        raise HTTPException(status_code=403, detail="Account suspended")
    return user


def require_admin(user: User = Depends(get_current_user_any_status)) -> User:
    """Require current user to be admin."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
