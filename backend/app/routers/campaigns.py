"""
Campaigns Router — Funding, fulfillment status, the blind feed, cancel/pause/resume.
All routes require auth.
"""

import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user
from app.database import get_db
from app.models import User, LinkType
from app.serializers import serialize_campaign
from app.services.fulfillment_service import CampaignFulfillment
from app.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


class CampaignCreateRequest(BaseModel):
    target_url: str | None = None
    target_keyword: str
    link_type: str = LinkType.HYPERLINK_DOFOLLOW.value
    placement_format: str
    industry: str | None = None
    quantity: int = 1
    credit_reward: int
    publisher_notes: str | None = None


@router.get("")
async def list_campaigns(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Campaigns owned by the caller, newest first."""
    campaigns = await CampaignFulfillment(db).list_owned(user)
    return {"campaigns": [serialize_campaign(c) for c in campaigns]}


@router.post("", status_code=201)
async def create_campaign(
    payload: CampaignCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Fund a campaign: quantity x credit_reward is debited now and held until
    slots are approved (paid to publishers) or removed (refunded).
    """
    campaign = await CampaignFulfillment(db).create_campaign(
        owner=user,
        target_url=payload.target_url,
        target_keyword=payload.target_keyword,
        link_type=payload.link_type,
        placement_format=payload.placement_format,
        industry=payload.industry,
        quantity=payload.quantity,
        credit_reward=payload.credit_reward,
        publisher_notes=payload.publisher_notes,
    )
    return {
        "campaign": serialize_campaign(campaign),
        "total_cost": campaign.quantity * campaign.credit_reward,
    }


@router.get("/feed")
async def campaign_feed(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Open slots on other users' active campaigns. Target URL and keyword are revealed on reserve."""
    return {"slots": await CampaignFulfillment(db).feed(user)}


@router.get("/{campaign_id}")
async def campaign_status(
    campaign_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CampaignFulfillment(db).status(parse_uuid(campaign_id, "campaign_id"), user)


@router.post("/{campaign_id}/cancel")
async def cancel_campaign(
    campaign_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a campaign with no claimed slots; open slots are deleted and refunded."""
    return await CampaignFulfillment(db).cancel_campaign(parse_uuid(campaign_id, "campaign_id"), user)


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    campaign = await CampaignFulfillment(db).set_paused(parse_uuid(campaign_id, "campaign_id"), user, True)
    return {"campaign": serialize_campaign(campaign)}


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    campaign = await CampaignFulfillment(db).set_paused(parse_uuid(campaign_id, "campaign_id"), user, False)
    return {"campaign": serialize_campaign(campaign)}
