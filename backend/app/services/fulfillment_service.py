"""
Campaign Fulfillment Service — Funding, fill tracking and cancellation of campaigns.

- create_campaign(): escrows quantity * credit_reward from the owner (one `spend`
  transaction) and creates the campaign with `quantity` open slots.
- on_slot_approved(): the single counting point for filled_slots; completes the
  campaign when filled_slots reaches quantity.
- cancel_campaign() / remove_open_slot(): delete unclaimed inventory and refund
  its escrowed reward to the owner.

Counter updates are single conditional UPDATE statements, never Python-side
read-modify-write.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from app.models import (
    User, Campaign, Slot, CampaignStatus, SlotStatus, LinkType,
    TransactionType, ReferenceType,
)
from app.services.auth_service import ensure_can_act
from app.services.credit_ledger import CreditLedger
from app.utils import require_http_url, utcnow

logger = logging.getLogger(__name__)

MAX_CAMPAIGN_QUANTITY = 500

# Statuses in which a campaign still has an owner-controllable lifecycle
_LIVE_STATUSES = (CampaignStatus.ACTIVE.value, CampaignStatus.PAUSED.value)


async def get_campaign(db: AsyncSession, campaign_id: uuid.UUID, fresh: bool = False) -> Campaign:
    query = select(Campaign).where(Campaign.id == campaign_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    campaign = result.scalar_one_or_none()
    if not campaign:
        raise NotFoundError("Campaign not found")
    return campaign


class CampaignFulfillment:
    """Campaign-level operations, scoped to one session (one request transaction)."""

    def __init__(self, db: AsyncSession, ledger: Optional[CreditLedger] = None):
        self.db = db
        self.ledger = ledger or CreditLedger(db)

    # ── Creation ──────────────────────────────────────────────────────

    async def create_campaign(
        self,
        owner: User,
        target_url: Optional[str],
        target_keyword: str,
        link_type: str,
        placement_format: str,
        industry: Optional[str],
        quantity: int,
        credit_reward: int,
        publisher_notes: Optional[str] = None,
    ) -> Campaign:
        """Validate, debit the full cost up front, then create the campaign and its open slots."""
        ensure_can_act(owner)

        keyword = (target_keyword or "").strip()
        if not keyword:
            raise ValidationError("'target_keyword' is required")
        try:
            link_type = LinkType(link_type).value
        except ValueError:
            raise ValidationError(
                f"Invalid link_type {link_type!r}; expected one of "
                f"{', '.join(t.value for t in LinkType)}"
            )
        if link_type == LinkType.BRAND_MENTION.value:
            target_url = (target_url or "").strip() or None
            if target_url:
                target_url = require_http_url(target_url, "target_url")
        else:
            target_url = require_http_url(target_url, "target_url")
        if not (placement_format or "").strip():
            raise ValidationError("'placement_format' is required")
        if not (industry or "").strip():
            raise ValidationError("'industry' is required")
        if not isinstance(quantity, int) or quantity < 1 or quantity > MAX_CAMPAIGN_QUANTITY:
            raise ValidationError(f"'quantity' must be between 1 and {MAX_CAMPAIGN_QUANTITY}")
        if not isinstance(credit_reward, int) or credit_reward < 1:
            raise ValidationError("'credit_reward' must be a positive integer")

        campaign_id = uuid.uuid4()
        total_cost = quantity * credit_reward
        await self.ledger.transfer(
            owner.id, None, total_cost, TransactionType.SPEND,
            reference_type=ReferenceType.CAMPAIGN,
            reference_id=campaign_id,
            description=f"Created campaign for {target_url or keyword}",
        )

        now = utcnow()
        campaign = Campaign(
            id=campaign_id,
            owner_id=owner.id,
            target_url=target_url,
            target_keyword=keyword,
            link_type=link_type,
            placement_format=placement_format.strip(),
            industry=industry.strip(),
            quantity=quantity,
            filled_slots=0,
            credit_reward=credit_reward,
            publisher_notes=publisher_notes or None,
            status=CampaignStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(campaign)
        await self.db.flush()
        self.db.add_all([
            Slot(campaign_id=campaign_id, position=i + 1, status=SlotStatus.OPEN.value, created_at=now)
            for i in range(quantity)
        ])
        await self.db.flush()
        logger.info(f"Campaign {campaign_id} created by {owner.id}: {quantity} slots x {credit_reward} credits")
        return campaign

    # ── Fill tracking ─────────────────────────────────────────────────

    async def on_slot_approved(self, campaign_id: uuid.UUID) -> Campaign:
        """Count one approved slot; mark the campaign completed once every slot is filled."""
        result = await self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.filled_slots < Campaign.quantity)
            .values(filled_slots=Campaign.filled_slots + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await get_campaign(self.db, campaign_id)  # NotFoundError if it vanished
            raise StateConflictError("Campaign is already fully filled")

        await self._complete_if_filled(campaign_id)
        return await get_campaign(self.db, campaign_id, fresh=True)

    async def _complete_if_filled(self, campaign_id: uuid.UUID) -> None:
        completed = await self.db.execute(
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.filled_slots == Campaign.quantity,
                Campaign.status.in_(_LIVE_STATUSES),
            )
            .values(status=CampaignStatus.COMPLETED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount:
            logger.info(f"Campaign {campaign_id} completed")

    async def status(self, campaign_id: uuid.UUID, user: User) -> dict:
        """Fulfillment snapshot: quantity, filled count and slot counts per status."""
        campaign = await get_campaign(self.db, campaign_id, fresh=True)
        if campaign.owner_id != user.id and not user.is_admin:
            raise AuthorizationError("Not authorized to view this campaign")

        result = await self.db.execute(
            select(Slot.status, func.count(Slot.id))
            .where(Slot.campaign_id == campaign_id)
            .group_by(Slot.status)
        )
        counts = {s.value: 0 for s in SlotStatus}
        for status, count in result.all():
            counts[status] = count
        return {
            "campaign_id": str(campaign.id),
            "status": campaign.status,
            "quantity": campaign.quantity,
            "filled_slots": campaign.filled_slots,
            "remaining": campaign.quantity - campaign.filled_slots,
            "slots": counts,
        }

    # ── Owner controls ────────────────────────────────────────────────

    async def set_paused(self, campaign_id: uuid.UUID, owner: User, paused: bool) -> Campaign:
        ensure_can_act(owner)
        campaign = await get_campaign(self.db, campaign_id)
        if campaign.owner_id != owner.id:
            raise AuthorizationError("Not authorized to modify this campaign")

        expected = CampaignStatus.ACTIVE.value if paused else CampaignStatus.PAUSED.value
        target = CampaignStatus.PAUSED.value if paused else CampaignStatus.ACTIVE.value
        result = await self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == expected)
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(f"Campaign is {campaign.status}; cannot set it to {target}")
        return await get_campaign(self.db, campaign_id, fresh=True)

    async def cancel_campaign(self, campaign_id: uuid.UUID, owner: User) -> dict:
        """
        Cancel a campaign that has no claimed slots: delete its open slots and
        refund their reward to the owner in one ledger transaction.
        """
        ensure_can_act(owner)
        campaign = await get_campaign(self.db, campaign_id)
        if campaign.owner_id != owner.id:
            raise AuthorizationError("Not authorized to cancel this campaign")
        if campaign.status == CampaignStatus.CANCELLED.value:
            raise StateConflictError("Campaign is already cancelled")
        if campaign.status == CampaignStatus.COMPLETED.value:
            raise StateConflictError("Cannot cancel a completed campaign")

        result = await self.db.execute(select(Slot).where(Slot.campaign_id == campaign_id))
        slots = result.scalars().all()
        claimed = [s for s in slots if s.status != SlotStatus.OPEN.value]
        if claimed:
            raise StateConflictError(
                f"Cannot cancel: {len(claimed)} slot(s) have already been claimed or are in progress. "
                "Wait for them to resolve, then remove the remaining open slots."
            )

        refund = sum(s.credit_reward or campaign.credit_reward for s in slots)
        await self._delete_open_slots([s.id for s in slots])

        status_update = await self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status.in_(_LIVE_STATUSES))
            .values(status=CampaignStatus.CANCELLED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if status_update.rowcount != 1:
            raise StateConflictError("Campaign changed state during cancellation")

        if refund > 0:
            await self.ledger.transfer(
                None, owner.id, refund, TransactionType.REFUND,
                reference_type=ReferenceType.CAMPAIGN,
                reference_id=campaign_id,
                description=f"Cancelled campaign for {campaign.target_url or campaign.target_keyword}",
            )
        logger.info(f"Campaign {campaign_id} cancelled; {len(slots)} open slot(s) removed, {refund} credits refunded")
        return {"campaign_id": str(campaign_id), "removed_slots": len(slots), "refunded_credits": refund}

    async def remove_open_slot(self, slot_id: uuid.UUID, owner: User) -> dict:
        """
        Owner removes one unclaimed slot and gets its reward back. The campaign's
        quantity shrinks with it; removing the last slot cancels the campaign.
        """
        ensure_can_act(owner)
        result = await self.db.execute(select(Slot).where(Slot.id == slot_id))
        slot = result.scalar_one_or_none()
        if not slot:
            raise NotFoundError("Slot not found")
        campaign = await get_campaign(self.db, slot.campaign_id)
        if campaign.owner_id != owner.id:
            raise AuthorizationError("Not authorized to cancel this slot")
        if slot.status != SlotStatus.OPEN.value:
            raise StateConflictError("Can only cancel open slots")

        refund = slot.credit_reward or campaign.credit_reward
        await self._delete_open_slots([slot.id])

        if campaign.quantity > 1:
            shrink = await self.db.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id, Campaign.quantity > Campaign.filled_slots)
                .values(quantity=Campaign.quantity - 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if shrink.rowcount != 1:
                raise StateConflictError("Campaign changed state during slot removal")
            await self._complete_if_filled(campaign.id)
        else:
            await self.db.execute(
                update(Campaign)
                .where(Campaign.id == campaign.id)
                .values(status=CampaignStatus.CANCELLED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        await self.ledger.transfer(
            None, owner.id, refund, TransactionType.REFUND,
            reference_type=ReferenceType.SLOT,
            reference_id=slot_id,
            description=f"Cancelled link for {slot.target_url or campaign.target_url or campaign.target_keyword}",
        )
        campaign = await get_campaign(self.db, campaign.id, fresh=True)
        logger.info(f"Slot {slot_id} removed from campaign {campaign.id}; {refund} credits refunded")
        return {
            "slot_id": str(slot_id),
            "refunded_credits": refund,
            "campaign_status": campaign.status,
            "campaign_quantity": campaign.quantity,
        }

    async def _delete_open_slots(self, slot_ids: list[uuid.UUID]) -> None:
        """Delete the given slots only while they are still open; any lost race aborts."""
        if not slot_ids:
            return
        result = await self.db.execute(
            delete(Slot)
            .where(Slot.id.in_(slot_ids), Slot.status == SlotStatus.OPEN.value)
        )
        if result.rowcount != len(slot_ids):
            raise StateConflictError("A slot was claimed while it was being removed")

    # ── Listings ──────────────────────────────────────────────────────

    async def list_owned(self, owner: User) -> list[Campaign]:
        result = await self.db.execute(
            select(Campaign).where(Campaign.owner_id == owner.id).order_by(Campaign.created_at.desc())
        )
        return list(result.scalars().all())

    async def feed(self, user: User) -> list[dict]:
        """Blind feed: open slots on active campaigns owned by someone else. Targets stay hidden."""
        result = await self.db.execute(
            select(Slot, Campaign)
            .join(Campaign, Slot.campaign_id == Campaign.id)
            .where(
                Slot.status == SlotStatus.OPEN.value,
                Campaign.status == CampaignStatus.ACTIVE.value,
                Campaign.owner_id != user.id,
            )
            .order_by(Slot.created_at, Slot.position)
        )
        return [
            {
                "slot_id": str(slot.id),
                "campaign_id": str(campaign.id),
                "industry": slot.industry or campaign.industry,
                "link_type": slot.link_type or campaign.link_type,
                "placement_format": slot.placement_format or campaign.placement_format,
                "credit_reward": slot.credit_reward or campaign.credit_reward,
                "publisher_notes": campaign.publisher_notes,
                "created_at": slot.created_at,
            }
            for slot, campaign in result.all()
        ]
