"""
Admin Router — User credits/roles/suspension, asset review and the slot review queue.
All routes require an admin account.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.auth import require_admin
from app.database import get_db
from app.errors import NotFoundError, ValidationError, AuthorizationError
from app.models import User, Asset, UserRole, UserStatus, AssetStatus
from app.serializers import serialize_user, serialize_asset, serialize_slot
from app.services.credit_ledger import CreditLedger
from app.services.fulfillment_service import get_campaign
from app.services.slot_service import SlotLifecycle
from app.utils import parse_uuid, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

USER_ACTIONS = ("add_credits", "remove_credits", "make_admin", "remove_admin", "suspend", "activate")


# ── Schemas ────────────────────────────────────────────────────────────

class UserActionRequest(BaseModel):
    action: str
    amount: int | None = None
    reason: str | None = None


class AssetReviewRequest(BaseModel):
    status: str
    admin_notes: str | None = None


class SlotReviewRequest(BaseModel):
    action: str
    admin_notes: str | None = None


# ── Users ──────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """List all users. Admin only."""
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    return {"users": [serialize_user(u) for u in result.scalars().all()]}


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    payload: UserActionRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Credit adjustments go through the ledger; role/status changes are plain updates."""
    if payload.action not in USER_ACTIONS:
        raise ValidationError(f"Invalid action; expected one of {', '.join(USER_ACTIONS)}")

    result = await db.execute(select(User).where(User.id == parse_uuid(user_id, "user_id")))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    if user.id == current.id and payload.action in ("remove_admin", "suspend"):
        raise AuthorizationError("You cannot demote or suspend your own account")

    response = {}
    if payload.action in ("add_credits", "remove_credits"):
        if payload.amount is None or payload.amount <= 0:
            raise ValidationError("'amount' must be a positive integer")
        ledger = CreditLedger(db)
        if payload.action == "add_credits":
            tx = await ledger.add(user.id, payload.amount, payload.reason)
        else:
            tx = await ledger.remove(user.id, payload.amount, payload.reason)
        response["transaction_id"] = str(tx.id)
        response["amount"] = tx.amount
        await db.refresh(user)
    else:
        if payload.action == "make_admin":
            user.role = UserRole.ADMIN.value
        elif payload.action == "remove_admin":
            user.role = UserRole.USER.value
        elif payload.action == "suspend":
            user.status = UserStatus.SUSPENDED.value
        else:
            user.status = UserStatus.ACTIVE.value
        user.updated_at = utcnow()
        await db.flush()

    logger.info(f"Admin {current.id} applied {payload.action} to user {user.id}")
    response["user"] = serialize_user(user)
    return response


# ── Assets ─────────────────────────────────────────────────────────────

@router.get("/assets")
async def list_assets(
    status: str | None = None,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Asset).order_by(Asset.created_at.asc())
    if status:
        query = query.where(Asset.status == status)
    result = await db.execute(query)
    return {"assets": [serialize_asset(a) for a in result.scalars().all()]}


@router.patch("/assets/{asset_id}")
async def review_asset(
    asset_id: str,
    payload: AssetReviewRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set an asset's review status. Only approved assets can claim slots."""
    try:
        status = AssetStatus(payload.status).value
    except ValueError:
        raise ValidationError(
            f"Invalid status; expected one of {', '.join(s.value for s in AssetStatus)}"
        )
    result = await db.execute(select(Asset).where(Asset.id == parse_uuid(asset_id, "asset_id")))
    asset = result.scalar_one_or_none()
    if not asset:
        raise NotFoundError("Asset not found")

    asset.status = status
    asset.admin_notes = payload.admin_notes or None
    asset.updated_at = utcnow()
    await db.flush()
    logger.info(f"Asset {asset.id} ({asset.domain}) set to {status} by admin {current.id}")
    return {"asset": serialize_asset(asset)}


# ── Slot review ────────────────────────────────────────────────────────

@router.get("/slots")
async def pending_slots(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Submitted slots whose proof failed automatic verification, oldest first."""
    rows = await SlotLifecycle(db).pending_review()
    return {"slots": [serialize_slot(s, c, a) for s, c, a in rows]}


@router.put("/slots/{slot_id}")
async def review_slot(
    slot_id: str,
    payload: SlotReviewRequest,
    current: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve (pays the publisher) or reject a submitted slot."""
    slot = await SlotLifecycle(db).admin_review(current, parse_uuid(slot_id, "slot_id"), payload.action, payload.admin_notes)
    campaign = await get_campaign(db, slot.campaign_id, fresh=True)
    return {"slot": serialize_slot(slot, campaign)}
