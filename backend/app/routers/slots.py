"""
Slots Router — Claim, prove, retry and release campaign slots.

Proof submission fetches the publisher's page (LinkVerifier) before the slot is
updated; a passing check approves the slot and pays the reward in the same request.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.auth import get_current_user
from app.database import get_db
from app.models import User, Asset
from app.serializers import serialize_slot
from app.services.fulfillment_service import get_campaign
from app.services.link_verifier import LinkVerifier, get_link_verifier
from app.services.slot_service import SlotLifecycle
from app.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ────────────────────────────────────────────────────────────

class ReserveRequest(BaseModel):
    campaign_id: str
    asset_id: str


class ClaimRequest(BaseModel):
    asset_id: str


class ProofRequest(BaseModel):
    slot_id: str
    proof_url: str


class SlotRef(BaseModel):
    slot_id: str


async def _slot_payload(db: AsyncSession, slot, reveal_target: bool = True) -> dict:
    campaign = await get_campaign(db, slot.campaign_id)
    asset = None
    if slot.publisher_asset_id:
        result = await db.execute(select(Asset).where(Asset.id == slot.publisher_asset_id))
        asset = result.scalar_one_or_none()
    return serialize_slot(slot, campaign, asset, reveal_target=reveal_target)


# ── Claiming ────────────────────────────────────────────────────────────

@router.post("/reserve")
async def reserve_slot(
    payload: ReserveRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Reserve the next open slot of a campaign with one of the caller's approved assets."""
    slot = await SlotLifecycle(db).reserve_in_campaign(
        user,
        parse_uuid(payload.campaign_id, "campaign_id"),
        parse_uuid(payload.asset_id, "asset_id"),
    )
    return {"slot": await _slot_payload(db, slot)}


@router.post("/submit")
async def submit_proof(
    payload: ProofRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    verifier: LinkVerifier = Depends(get_link_verifier),
):
    slot, verification = await SlotLifecycle(db, verifier).submit_proof(
        user, parse_uuid(payload.slot_id, "slot_id"), payload.proof_url,
    )
    return {
        "slot": await _slot_payload(db, slot),
        "verification": verification.model_dump(),
        "message": (
            "Link verified and approved. Credits have been added to your balance."
            if verification.verified
            else "Link could not be verified. Fix the placement and retry with a new proof URL."
        ),
    }


@router.post("/retry")
async def retry_proof(
    payload: ProofRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    verifier: LinkVerifier = Depends(get_link_verifier),
):
    slot, verification = await SlotLifecycle(db, verifier).retry_proof(
        user, parse_uuid(payload.slot_id, "slot_id"), payload.proof_url,
    )
    return {"slot": await _slot_payload(db, slot), "verification": verification.model_dump()}


@router.post("/cancel")
async def cancel_claim(
    payload: SlotRef,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Publisher releases a reserved/submitted/rejected slot back to the pool."""
    slot = await SlotLifecycle(db).cancel_claim(user, parse_uuid(payload.slot_id, "slot_id"))
    return {"slot": await _slot_payload(db, slot, reveal_target=False)}


# ── Listings ────────────────────────────────────────────────────────────

@router.get("/mine")
async def my_slots(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await SlotLifecycle(db).publisher_slots(user)
    return {"slots": [serialize_slot(s, c, a) for s, c, a in rows]}


@router.get("/given")
async def links_given(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await SlotLifecycle(db).approved_given(user)
    return {"slots": [serialize_slot(s, c, a) for s, c, a in rows]}


@router.get("/received")
async def links_received(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await SlotLifecycle(db).approved_received(user)
    return {"slots": [serialize_slot(s, c, a) for s, c, a in rows]}


# ── Single slot ─────────────────────────────────────────────────────────

@router.get("/{slot_id}")
async def get_slot(
    slot_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Slot with effective requirements; the target is shown to the campaign owner, the claimant and admins."""
    slot = await SlotLifecycle(db).get_slot(parse_uuid(slot_id, "slot_id"))
    campaign = await get_campaign(db, slot.campaign_id)
    reveal = user.is_admin or campaign.owner_id == user.id or slot.publisher_id == user.id
    return {"slot": await _slot_payload(db, slot, reveal_target=reveal)}


@router.post("/{slot_id}/claim")
async def claim_slot(
    slot_id: str,
    payload: ClaimRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    slot = await SlotLifecycle(db).claim(
        user, parse_uuid(slot_id, "slot_id"), parse_uuid(payload.asset_id, "asset_id"),
    )
    return {"slot": await _slot_payload(db, slot)}


@router.post("/{slot_id}/remove")
async def remove_open_slot(
    slot_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Campaign owner deletes an unclaimed slot; its reward is refunded."""
    return await SlotLifecycle(db).remove_open_slot(user, parse_uuid(slot_id, "slot_id"))
