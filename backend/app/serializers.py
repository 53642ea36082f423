"""
JSON shapes shared by the routers.
"""

import json
from typing import Optional

from app.models import User, Asset, Campaign, Slot
from app.services.slot_service import resolve_requirements


def _id(value) -> Optional[str]:
    return str(value) if value else None


def serialize_user(u: User) -> dict:
    return {
        "id": str(u.id),
        "external_id": u.external_id,
        "email": u.email,
        "display_name": u.display_name,
        "photo_url": u.photo_url,
        "role": u.role,
        "credits": u.credits,
        "status": u.status,
        "created_at": u.created_at,
    }


def serialize_asset(a: Asset) -> dict:
    return {
        "id": str(a.id),
        "owner_id": str(a.owner_id),
        "domain": a.domain,
        "industry": a.industry,
        "status": a.status,
        "admin_notes": a.admin_notes,
        "domain_rating": a.domain_rating,
        "traffic": a.traffic,
        "summary": a.summary,
        "metrics_fetched_at": a.metrics_fetched_at,
        "created_at": a.created_at,
    }


def serialize_campaign(c: Campaign) -> dict:
    return {
        "id": str(c.id),
        "owner_id": str(c.owner_id),
        "target_url": c.target_url,
        "target_keyword": c.target_keyword,
        "link_type": c.link_type,
        "placement_format": c.placement_format,
        "industry": c.industry,
        "quantity": c.quantity,
        "filled_slots": c.filled_slots,
        "credit_reward": c.credit_reward,
        "publisher_notes": c.publisher_notes,
        "status": c.status,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }


def serialize_slot(
    s: Slot,
    campaign: Campaign,
    asset: Optional[Asset] = None,
    reveal_target: bool = True,
) -> dict:
    """Slot with its effective requirements. Target URL/keyword are hidden unless reveal_target."""
    req = resolve_requirements(s, campaign)
    try:
        details = json.loads(s.verification_details) if s.verification_details else []
    except ValueError:
        details = [s.verification_details]
    return {
        "id": str(s.id),
        "campaign_id": str(s.campaign_id),
        "position": s.position,
        "status": s.status,
        "target_url": req["target_url"] if reveal_target else None,
        "target_keyword": req["target_keyword"] if reveal_target else None,
        "link_type": req["link_type"],
        "placement_format": req["placement_format"],
        "credit_reward": req["credit_reward"],
        "industry": req["industry"],
        "publisher_notes": campaign.publisher_notes,
        "publisher_id": _id(s.publisher_id),
        "publisher_asset_id": _id(s.publisher_asset_id),
        "publisher_domain": asset.domain if asset else None,
        "proof_url": s.proof_url,
        "verified": s.verified,
        "verification_details": details,
        "admin_notes": s.admin_notes,
        "reserved_at": s.reserved_at,
        "submitted_at": s.submitted_at,
        "reviewed_at": s.reviewed_at,
        "created_at": s.created_at,
        "campaign_status": campaign.status,
    }
