"""
Slot Lifecycle Service — The per-slot state machine.

    open ──claim──▶ reserved ──proof ok──▶ approved (paid)
                       │  └──proof bad──▶ submitted ──retry ok / admin approve──▶ approved
                       │                      └──admin reject──▶ rejected
    reserved / submitted / rejected ──publisher cancel──▶ open

Every transition is checked against TRANSITIONS and then applied with a
compare-and-set UPDATE (… WHERE id = ? AND status = <expected> …), so two
concurrent requests can never both move the same slot out of the same state.
Link verification runs before the UPDATE and holds no row locks while the
proof page is fetched.
"""

import enum
import json
import logging
import uuid
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    AuthorizationError, NotFoundError, StateConflictError, ValidationError,
)
from app.models import (
    User, Asset, Campaign, Slot, AssetStatus, CampaignStatus, SlotStatus,
    LinkType, TransactionType, ReferenceType,
)
from app.services.auth_service import ensure_admin, ensure_can_act
from app.services.credit_ledger import CreditLedger
from app.services.fulfillment_service import CampaignFulfillment, get_campaign
from app.services.link_verifier import LinkVerifier, VerificationResult
from app.utils import require_http_url, utcnow

logger = logging.getLogger(__name__)


class SlotEvent(str, enum.Enum):
    CLAIM = "claim"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"
    CANCEL_CLAIM = "cancel_claim"
    ADMIN_APPROVE = "admin_approve"
    ADMIN_REJECT = "admin_reject"


_OPEN, _RESERVED, _SUBMITTED, _APPROVED, _REJECTED = (
    SlotStatus.OPEN, SlotStatus.RESERVED, SlotStatus.SUBMITTED, SlotStatus.APPROVED, SlotStatus.REJECTED,
)

# (current status, event) -> next status. Anything missing is an illegal transition.
TRANSITIONS: dict[tuple[SlotStatus, SlotEvent], SlotStatus] = {
    (_OPEN, SlotEvent.CLAIM): _RESERVED,
    (_RESERVED, SlotEvent.VERIFICATION_PASSED): _APPROVED,
    (_RESERVED, SlotEvent.VERIFICATION_FAILED): _SUBMITTED,
    (_SUBMITTED, SlotEvent.VERIFICATION_PASSED): _APPROVED,
    (_SUBMITTED, SlotEvent.VERIFICATION_FAILED): _SUBMITTED,
    (_RESERVED, SlotEvent.CANCEL_CLAIM): _OPEN,
    (_SUBMITTED, SlotEvent.CANCEL_CLAIM): _OPEN,
    (_REJECTED, SlotEvent.CANCEL_CLAIM): _OPEN,
    (_SUBMITTED, SlotEvent.ADMIN_APPROVE): _APPROVED,
    (_SUBMITTED, SlotEvent.ADMIN_REJECT): _REJECTED,
}


def next_status(current: str | SlotStatus, event: SlotEvent) -> SlotStatus:
    """The single guarded dispatcher for slot transitions."""
    try:
        current = SlotStatus(current)
    except ValueError:
        raise StateConflictError(f"Slot has unknown status {current!r}")
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise StateConflictError(f"Cannot {event.value.replace('_', ' ')} a slot that is {current.value}")
    return target


def resolve_requirements(slot: Slot, campaign: Campaign) -> dict:
    """Slot-level overrides win over the campaign's values."""
    return {
        "target_url": slot.target_url or campaign.target_url,
        "target_keyword": slot.target_keyword or campaign.target_keyword or "",
        "link_type": slot.link_type or campaign.link_type or LinkType.HYPERLINK_DOFOLLOW.value,
        "placement_format": slot.placement_format or campaign.placement_format,
        "credit_reward": slot.credit_reward or campaign.credit_reward,
        "industry": slot.industry or campaign.industry,
    }


class SlotLifecycle:
    """Slot operations for one request. Nothing here commits; get_db() does."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: Optional[LinkVerifier] = None,
        ledger: Optional[CreditLedger] = None,
    ):
        self.db = db
        self.verifier = verifier or LinkVerifier()
        self.ledger = ledger or CreditLedger(db)
        self.fulfillment = CampaignFulfillment(db, self.ledger)

    # ── Loading ───────────────────────────────────────────────────────

    async def get_slot(self, slot_id: uuid.UUID, fresh: bool = False) -> Slot:
        query = select(Slot).where(Slot.id == slot_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        slot = result.scalar_one_or_none()
        if not slot:
            raise NotFoundError("Slot not found")
        return slot

    async def _get_asset(self, asset_id: uuid.UUID) -> Asset:
        result = await self.db.execute(select(Asset).where(Asset.id == asset_id))
        asset = result.scalar_one_or_none()
        if not asset:
            raise NotFoundError("Asset not found")
        return asset

    async def _compare_and_set(
        self,
        slot_id: uuid.UUID,
        expected: SlotStatus,
        values: dict,
        publisher_id: Optional[uuid.UUID] = None,
        extra_where: tuple = (),
    ) -> Slot:
        """Apply `values` only if the slot is still in `expected` (and still held by publisher_id)."""
        conditions = [Slot.id == slot_id, Slot.status == expected.value, *extra_where]
        if publisher_id is not None:
            conditions.append(Slot.publisher_id == publisher_id)
        result = await self.db.execute(
            update(Slot).where(*conditions).values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError("Slot changed state concurrently; reload and try again")
        return await self.get_slot(slot_id, fresh=True)

    # ── Claim ─────────────────────────────────────────────────────────

    def _check_claim_guards(self, user: User, campaign: Campaign, asset: Asset) -> None:
        ensure_can_act(user)
        if asset.owner_id != user.id:
            raise AuthorizationError("You can only claim slots with your own assets")
        if asset.status != AssetStatus.APPROVED.value:
            raise StateConflictError("You must have an approved asset to reserve a slot")
        if campaign.status != CampaignStatus.ACTIVE.value:
            raise StateConflictError("Campaign is not active")
        if campaign.owner_id == user.id:
            raise AuthorizationError("You cannot reserve a slot on your own campaign")

    @staticmethod
    def _check_industry(slot: Slot, campaign: Campaign, asset: Asset) -> None:
        required = slot.industry or campaign.industry
        if required and asset.industry and required != asset.industry:
            raise ValidationError("Your asset industry does not match the campaign requirements")

    async def _reserve(self, slot: Slot, user: User, asset: Asset) -> Slot:
        next_status(slot.status, SlotEvent.CLAIM)
        active_campaigns = select(Campaign.id).where(Campaign.status == CampaignStatus.ACTIVE.value)
        claimed = await self._compare_and_set(
            slot.id,
            SlotStatus.OPEN,
            {
                "status": SlotStatus.RESERVED.value,
                "publisher_id": user.id,
                "publisher_asset_id": asset.id,
                "reserved_at": utcnow(),
            },
            extra_where=(Slot.campaign_id.in_(active_campaigns),),
        )
        logger.info(f"Slot {slot.id} reserved by {user.id} with asset {asset.id}")
        return claimed

    async def claim(self, user: User, slot_id: uuid.UUID, asset_id: uuid.UUID) -> Slot:
        """Claim one specific open slot. A lost race surfaces as StateConflictError."""
        slot = await self.get_slot(slot_id)
        campaign = await get_campaign(self.db, slot.campaign_id)
        asset = await self._get_asset(asset_id)
        self._check_claim_guards(user, campaign, asset)
        self._check_industry(slot, campaign, asset)
        return await self._reserve(slot, user, asset)

    async def reserve_in_campaign(self, user: User, campaign_id: uuid.UUID, asset_id: uuid.UUID) -> Slot:
        """Claim the first open slot of a campaign, moving on to the next one if a concurrent claimer wins."""
        campaign = await get_campaign(self.db, campaign_id)
        asset = await self._get_asset(asset_id)
        self._check_claim_guards(user, campaign, asset)

        result = await self.db.execute(
            select(Slot)
            .where(Slot.campaign_id == campaign_id, Slot.status == SlotStatus.OPEN.value)
            .order_by(Slot.position, Slot.created_at)
        )
        candidates = result.scalars().all()
        for slot in candidates:
            self._check_industry(slot, campaign, asset)
            try:
                return await self._reserve(slot, user, asset)
            except StateConflictError:
                logger.info(f"Slot {slot.id} taken concurrently; trying the next open slot")
        raise StateConflictError("No open slots available")

    # ── Proof submission ──────────────────────────────────────────────

    async def submit_proof(self, user: User, slot_id: uuid.UUID, proof_url: str) -> tuple[Slot, VerificationResult]:
        """First proof for a reserved slot: verify, then apply the verdict atomically."""
        return await self._verify_and_apply(user, slot_id, proof_url, expected=SlotStatus.RESERVED)

    async def retry_proof(self, user: User, slot_id: uuid.UUID, proof_url: str) -> tuple[Slot, VerificationResult]:
        """New proof URL for a slot whose earlier proof failed verification."""
        return await self._verify_and_apply(user, slot_id, proof_url, expected=SlotStatus.SUBMITTED)

    async def _verify_and_apply(
        self,
        user: User,
        slot_id: uuid.UUID,
        proof_url: str,
        expected: SlotStatus,
    ) -> tuple[Slot, VerificationResult]:
        ensure_can_act(user)
        proof_url = require_http_url(proof_url, "proof_url")
        slot = await self.get_slot(slot_id)
        if slot.publisher_id != user.id:
            raise AuthorizationError("This slot is not reserved by you")
        if slot.status != expected.value:
            raise StateConflictError(
                f"Slot is {slot.status}; expected {expected.value}"
                + (" (use retry for a submitted slot)" if slot.status == SlotStatus.SUBMITTED.value else "")
            )
        if slot.verified is True:
            raise StateConflictError("This slot was already verified. Cannot retry.")
        next_status(slot.status, SlotEvent.VERIFICATION_PASSED)

        campaign = await get_campaign(self.db, slot.campaign_id)
        req = resolve_requirements(slot, campaign)

        verification = await self.verifier.verify(
            proof_url=proof_url,
            target_url=req["target_url"],
            target_keyword=req["target_keyword"],
            link_type=req["link_type"],
        )

        event = SlotEvent.VERIFICATION_PASSED if verification.verified else SlotEvent.VERIFICATION_FAILED
        target = next_status(expected, event)
        now = utcnow()
        slot = await self._compare_and_set(
            slot_id,
            expected,
            {
                "status": target.value,
                "proof_url": proof_url,
                "submitted_at": now,
                "reviewed_at": now if verification.verified else None,
                "verified": verification.verified,
                "verification_details": json.dumps(verification.details),
            },
            publisher_id=user.id,
            extra_where=(or_(Slot.verified.is_(None), Slot.verified.is_(False)),),
        )
        logger.info(f"Slot {slot_id} proof {proof_url}: verified={verification.verified} -> {target.value}")

        if verification.verified:
            await self._pay_out(slot, campaign, req["credit_reward"], "Auto-verified link for")
        return slot, verification

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_claim(self, user: User, slot_id: uuid.UUID) -> Slot:
        """Publisher gives the slot back to the pool. No credits move; the claim was never billed."""
        ensure_can_act(user)
        slot = await self.get_slot(slot_id)
        if slot.publisher_id != user.id:
            raise AuthorizationError("This slot is not reserved by you")
        current = SlotStatus(slot.status)
        if current not in (_RESERVED, _SUBMITTED, _REJECTED):
            raise StateConflictError("Only reserved, submitted or rejected slots can be cancelled")
        next_status(current, SlotEvent.CANCEL_CLAIM)

        slot = await self._compare_and_set(
            slot_id,
            current,
            {
                "status": SlotStatus.OPEN.value,
                "publisher_id": None,
                "publisher_asset_id": None,
                "proof_url": None,
                "reserved_at": None,
                "submitted_at": None,
                "reviewed_at": None,
                "verified": None,
                "verification_details": None,
                "admin_notes": None,
            },
            publisher_id=user.id,
        )
        logger.info(f"Slot {slot_id} released by {user.id}; back to open")
        return slot

    async def remove_open_slot(self, owner: User, slot_id: uuid.UUID) -> dict:
        """Campaign owner deletes an unclaimed slot and is refunded its reward."""
        return await self.fulfillment.remove_open_slot(slot_id, owner)

    # ── Admin review ──────────────────────────────────────────────────

    async def admin_review(self, admin: User, slot_id: uuid.UUID, action: str, admin_notes: Optional[str] = None) -> Slot:
        ensure_admin(admin)
        if action not in ("approve", "reject"):
            raise ValidationError("action must be 'approve' or 'reject'")
        slot = await self.get_slot(slot_id)
        event = SlotEvent.ADMIN_APPROVE if action == "approve" else SlotEvent.ADMIN_REJECT
        target = next_status(slot.status, event)
        campaign = await get_campaign(self.db, slot.campaign_id)

        now = utcnow()
        slot = await self._compare_and_set(
            slot_id,
            SlotStatus(slot.status),
            {"status": target.value, "admin_notes": admin_notes or None, "reviewed_at": now},
        )
        logger.info(f"Slot {slot_id} {target.value} by admin {admin.id}")

        if target == SlotStatus.APPROVED:
            reward = resolve_requirements(slot, campaign)["credit_reward"]
            await self._pay_out(slot, campaign, reward, "Earned credits for completing slot on")
        return slot

    async def _pay_out(self, slot: Slot, campaign: Campaign, reward: int, label: str) -> None:
        """Release the slot's escrowed reward to its publisher and count the fill."""
        await self.ledger.transfer(
            None, slot.publisher_id, reward, TransactionType.EARN,
            reference_type=ReferenceType.SLOT,
            reference_id=slot.id,
            description=f"{label} {slot.target_keyword or campaign.target_keyword} (campaign {campaign.id})",
        )
        await self.fulfillment.on_slot_approved(campaign.id)

    # ── Queries ───────────────────────────────────────────────────────

    async def publisher_slots(self, user: User) -> list[tuple[Slot, Campaign, Optional[Asset]]]:
        """The caller's claimed slots (anything not open), most recently reserved first."""
        result = await self.db.execute(
            select(Slot, Campaign, Asset)
            .join(Campaign, Slot.campaign_id == Campaign.id)
            .outerjoin(Asset, Slot.publisher_asset_id == Asset.id)
            .where(Slot.publisher_id == user.id, Slot.status != SlotStatus.OPEN.value)
            .order_by(Slot.reserved_at.desc())
        )
        return [tuple(row) for row in result.all()]

    async def approved_given(self, user: User) -> list[tuple[Slot, Campaign, Optional[Asset]]]:
        """Approved placements the caller made on their sites."""
        result = await self.db.execute(
            select(Slot, Campaign, Asset)
            .join(Campaign, Slot.campaign_id == Campaign.id)
            .outerjoin(Asset, Slot.publisher_asset_id == Asset.id)
            .where(Slot.publisher_id == user.id, Slot.status == SlotStatus.APPROVED.value)
            .order_by(Slot.reviewed_at.desc())
        )
        return [tuple(row) for row in result.all()]

    async def approved_received(self, user: User) -> list[tuple[Slot, Campaign, Optional[Asset]]]:
        """Approved placements on the caller's campaigns."""
        result = await self.db.execute(
            select(Slot, Campaign, Asset)
            .join(Campaign, Slot.campaign_id == Campaign.id)
            .outerjoin(Asset, Slot.publisher_asset_id == Asset.id)
            .where(Campaign.owner_id == user.id, Slot.status == SlotStatus.APPROVED.value)
            .order_by(Slot.reviewed_at.desc())
        )
        return [tuple(row) for row in result.all()]

    async def pending_review(self) -> list[tuple[Slot, Campaign, Optional[Asset]]]:
        """Submitted slots awaiting an admin decision, oldest first."""
        result = await self.db.execute(
            select(Slot, Campaign, Asset)
            .join(Campaign, Slot.campaign_id == Campaign.id)
            .outerjoin(Asset, Slot.publisher_asset_id == Asset.id)
            .where(Slot.status == SlotStatus.SUBMITTED.value)
            .order_by(Slot.submitted_at.asc())
        )
        return [tuple(row) for row in result.all()]
