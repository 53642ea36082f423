"""
Auth Router — Provision the caller from their identity token, whoami.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_token_claims, get_current_user_any_status
from app.database import get_db
from app.models import User
from app.serializers import serialize_user
from app.services.auth_service import provision_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


# ── Schemas ────────────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    display_name: str | None = None
    photo_url: str | None = None


# ── Endpoints ───────────────────────────────────────────────────────────

@router.post("/sync")
async def sync_user(
    payload: SyncRequest | None = None,
    claims: dict = Depends(get_token_claims),
    db: AsyncSession = Depends(get_db),
):
    """Create the caller on first sign-in (with signup bonus) or refresh their profile."""
    payload = payload or SyncRequest()
    user, created = await provision_user(
        db,
        external_id=claims["sub"],
        email=claims.get("email") or "",
        display_name=payload.display_name or claims.get("name"),
        photo_url=payload.photo_url,
    )
    return {"user": serialize_user(user), "created": created}


@router.get("/me")
async def whoami(user: User = Depends(get_current_user_any_status)):
    """Current user, including balance and account status."""
    return {"user": serialize_user(user)}
