"""
Assets Router — Publisher websites. Review status is set by admins (see admin router).
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from app.auth import get_current_user
from app.database import get_db
from app.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from app.models import User, Asset, Slot, AssetStatus, SlotStatus
from app.serializers import serialize_asset
from app.utils import normalize_domain, parse_uuid, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


class AssetCreateRequest(BaseModel):
    domain: str
    industry: str | None = None


@router.get("")
async def list_my_assets(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Asset).where(Asset.owner_id == user.id).order_by(Asset.created_at.desc())
    )
    return {"assets": [serialize_asset(a) for a in result.scalars().all()]}


@router.post("", status_code=201)
async def create_asset(
    payload: AssetCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Register a website for review. Domains are unique across the exchange."""
    domain = normalize_domain(payload.domain)
    if not domain or "." not in domain:
        raise ValidationError("A valid domain is required")

    existing = await db.execute(select(Asset.id).where(Asset.domain == domain))
    if existing.scalar_one_or_none():
        raise StateConflictError("This domain is already registered")

    now = utcnow()
    asset = Asset(
        owner_id=user.id,
        domain=domain,
        industry=(payload.industry or "").strip() or None,
        status=AssetStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    db.add(asset)
    await db.flush()
    logger.info(f"Asset {asset.id} ({domain}) registered by {user.id}")
    return {"asset": serialize_asset(asset)}


@router.delete("/{asset_id}")
async def delete_asset(
    asset_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Remove an own asset unless it backs a claimed slot."""
    result = await db.execute(select(Asset).where(Asset.id == parse_uuid(asset_id, "asset_id")))
    asset = result.scalar_one_or_none()
    if not asset:
        raise NotFoundError("Asset not found")
    if asset.owner_id != user.id:
        raise AuthorizationError("Not authorized to delete this asset")

    in_use = await db.execute(
        select(func.count(Slot.id)).where(
            Slot.publisher_asset_id == asset.id,
            Slot.status != SlotStatus.OPEN.value,
        )
    )
    if in_use.scalar_one():
        raise StateConflictError("Asset is used by claimed or completed slots")

    await db.delete(asset)
    await db.flush()
    return {"ok": True}
