"""
Auth Service — Identity tokens and user provisioning.

Identity is owned by an external provider; the exchange only needs a verified
(sub, email, name) per call. Tokens are HS256 JWTs signed with SECRET_KEY.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import get_settings
from app.errors import AuthorizationError
from app.models import User, UserRole, UserStatus, TransactionType, ReferenceType
from app.services.credit_ledger import CreditLedger
from app.utils import utcnow

logger = logging.getLogger(__name__)

# JWT config
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours


def create_access_token(external_id: str, email: str = "", name: Optional[str] = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(external_id),
        "email": email,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


def ensure_can_act(user: User) -> None:
    """Suspended accounts may read but not mutate exchange state."""
    if user.is_suspended:
        raise AuthorizationError("Account suspended")


def ensure_admin(user: User) -> None:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def provision_user(
    db: AsyncSession,
    external_id: str,
    email: str = "",
    display_name: Optional[str] = None,
    photo_url: Optional[str] = None,
) -> tuple[User, bool]:
    """
    Create the user on first sight (signup bonus goes through the ledger) or
    refresh profile fields. Returns (user, created).
    """
    email = (email or "").strip().lower()
    settings = get_settings()
    user = await get_user_by_external_id(db, external_id)
    if user:
        if display_name:
            user.display_name = display_name
        if photo_url:
            user.photo_url = photo_url
        if email and email != user.email:
            user.email = email
        await db.flush()
        return user, False

    now = utcnow()
    is_first_admin = bool(settings.first_admin_email) and email == settings.first_admin_email.strip().lower()
    user = User(
        external_id=external_id,
        email=email,
        display_name=display_name,
        photo_url=photo_url,
        role=UserRole.ADMIN.value if is_first_admin else UserRole.USER.value,
        credits=0,
        status=UserStatus.ACTIVE.value,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    await db.flush()

    if settings.signup_bonus_credits > 0:
        await CreditLedger(db).transfer(
            None, user.id, settings.signup_bonus_credits, TransactionType.ADMIN_ADD,
            reference_type=ReferenceType.SIGNUP,
            description="Signup bonus",
        )
        await db.refresh(user)
    logger.info(f"Provisioned user {user.id} ({email or external_id}){' as admin' if is_first_admin else ''}")
    return user, True
