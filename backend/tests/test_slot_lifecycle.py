"""
Tests for the slot state machine: claim guards, proof submission and retry,
publisher cancellation, admin review and compare-and-set conflicts.
"""

import json

import pytest
from unittest.mock import patch, AsyncMock
from sqlalchemy import select

from app.errors import AuthorizationError, StateConflictError, ValidationError
from app.models import Campaign, Slot, SlotStatus, Transaction
from app.services.credit_ledger import CreditLedger
from app.services.fulfillment_service import CampaignFulfillment, get_campaign
from app.services.slot_service import (
    SlotEvent, SlotLifecycle, TRANSITIONS, next_status, resolve_requirements,
)

TARGET = "https://target.com/page"
PROOF = "https://pub.example.org/post"
NOFOLLOW_PAGE = f'<a href="{TARGET}" rel="nofollow">keyword</a>'
DOFOLLOW_PAGE = f'<a href="{TARGET}">keyword</a>'


@pytest.fixture
def exchange(db, make_user, make_asset):
    """Owner with a funded 3 x 50 campaign and two publishers with approved assets."""
    async def _setup(industry="tech", publisher_industry=None, quantity=3):
        owner = await make_user(credits=quantity * 50)
        pub1, pub2 = await make_user(), await make_user()
        campaign = await CampaignFulfillment(db).create_campaign(
            owner,
            target_url=TARGET,
            target_keyword="keyword",
            link_type="hyperlink_dofollow",
            placement_format="guest_post",
            industry=industry,
            quantity=quantity,
            credit_reward=50,
        )
        result = await db.execute(select(Slot.id).where(Slot.campaign_id == campaign.id).order_by(Slot.position))
        return {
            "owner": owner,
            "pub1": pub1,
            "pub2": pub2,
            "asset1": await make_asset(pub1, industry=publisher_industry),
            "asset2": await make_asset(pub2, industry=publisher_industry),
            "campaign": campaign,
            "slot_ids": list(result.scalars().all()),
        }

    return _setup


# ── Transition table ─────────────────────────────────────────────────

def test_transition_table_only_uses_defined_statuses():
    for (current, _event), target in TRANSITIONS.items():
        assert current in SlotStatus
        assert target in SlotStatus


def test_next_status_rejects_illegal_transitions():
    assert next_status("open", SlotEvent.CLAIM) == SlotStatus.RESERVED
    with pytest.raises(StateConflictError):
        next_status("approved", SlotEvent.CANCEL_CLAIM)
    with pytest.raises(StateConflictError):
        next_status("reserved", SlotEvent.ADMIN_APPROVE)
    with pytest.raises(StateConflictError):
        next_status("bogus", SlotEvent.CLAIM)


def test_slot_overrides_win_over_campaign():
    slot = Slot(target_keyword="override", credit_reward=75)
    campaign = Campaign(
        target_url=TARGET, target_keyword="keyword", link_type="hyperlink_nofollow",
        placement_format="guest_post", industry="tech", credit_reward=50,
    )
    req = resolve_requirements(slot, campaign)
    assert req["target_keyword"] == "override"
    assert req["credit_reward"] == 75
    assert req["target_url"] == TARGET
    assert req["link_type"] == "hyperlink_nofollow"


# ── Claim ────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_claim_reserves_and_second_claim_conflicts(db, exchange):
    ex = await exchange()
    lifecycle = SlotLifecycle(db)
    slot_id = ex["slot_ids"][0]

    slot = await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    assert slot.status == "reserved"
    assert slot.publisher_id == ex["pub1"].id
    assert slot.publisher_asset_id == ex["asset1"].id
    assert slot.reserved_at is not None

    with pytest.raises(StateConflictError):
        await lifecycle.claim(ex["pub2"], slot_id, ex["asset2"].id)
    assert (await get_campaign(db, ex["campaign"].id, fresh=True)).filled_slots == 0


@pytest.mark.anyio
async def test_stale_claim_loses_compare_and_set(session_factory, exchange, db):
    ex = await exchange()
    await db.commit()
    slot_id = ex["slot_ids"][0]

    async with session_factory() as first, session_factory() as second:
        stale = await SlotLifecycle(second).get_slot(slot_id)
        assert stale.status == "open"

        await SlotLifecycle(first).claim(ex["pub1"], slot_id, ex["asset1"].id)
        await first.commit()

        asset2 = await SlotLifecycle(second)._get_asset(ex["asset2"].id)
        with pytest.raises(StateConflictError):
            await SlotLifecycle(second)._reserve(stale, ex["pub2"], asset2)
        await second.rollback()

    slot = await SlotLifecycle(db).get_slot(slot_id, fresh=True)
    assert slot.publisher_id == ex["pub1"].id


@pytest.mark.anyio
async def test_claim_guards(db, exchange, make_asset):
    ex = await exchange()
    lifecycle = SlotLifecycle(db)
    slot_id = ex["slot_ids"][0]
    pending = await make_asset(ex["pub1"], status="pending")
    owner_asset = await make_asset(ex["owner"])

    with pytest.raises(StateConflictError, match="approved asset"):
        await lifecycle.claim(ex["pub1"], slot_id, pending.id)
    with pytest.raises(AuthorizationError):
        await lifecycle.claim(ex["pub1"], slot_id, ex["asset2"].id)
    with pytest.raises(AuthorizationError, match="own campaign"):
        await lifecycle.claim(ex["owner"], slot_id, owner_asset.id)

    await CampaignFulfillment(db).set_paused(ex["campaign"].id, ex["owner"], True)
    with pytest.raises(StateConflictError, match="not active"):
        await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)


@pytest.mark.anyio
async def test_suspended_publisher_cannot_claim(db, exchange):
    ex = await exchange()
    ex["pub1"].status = "suspended"
    with pytest.raises(AuthorizationError):
        await SlotLifecycle(db).claim(ex["pub1"], ex["slot_ids"][0], ex["asset1"].id)


@pytest.mark.anyio
async def test_industry_mismatch_only_when_both_set(db, exchange, make_asset):
    ex = await exchange(industry="finance", publisher_industry="travel")
    lifecycle = SlotLifecycle(db)
    with pytest.raises(ValidationError):
        await lifecycle.claim(ex["pub1"], ex["slot_ids"][0], ex["asset1"].id)

    unclassified = await make_asset(ex["pub1"], industry=None)
    slot = await lifecycle.claim(ex["pub1"], ex["slot_ids"][0], unclassified.id)
    assert slot.status == "reserved"


@pytest.mark.anyio
async def test_reserve_in_campaign_takes_first_open_slot(db, exchange):
    ex = await exchange()
    lifecycle = SlotLifecycle(db)

    first = await lifecycle.reserve_in_campaign(ex["pub1"], ex["campaign"].id, ex["asset1"].id)
    second = await lifecycle.reserve_in_campaign(ex["pub2"], ex["campaign"].id, ex["asset2"].id)

    assert first.id == ex["slot_ids"][0]
    assert second.id == ex["slot_ids"][1]


@pytest.mark.anyio
async def test_reserve_in_campaign_moves_past_a_lost_race(db, exchange):
    ex = await exchange()
    lifecycle = SlotLifecycle(db)
    winner = await lifecycle.get_slot(ex["slot_ids"][1])

    with patch.object(
        SlotLifecycle, "_reserve", new_callable=AsyncMock,
        side_effect=[StateConflictError("taken"), winner],
    ) as reserve:
        slot = await lifecycle.reserve_in_campaign(ex["pub1"], ex["campaign"].id, ex["asset1"].id)

    assert slot is winner
    assert reserve.await_count == 2


@pytest.mark.anyio
async def test_reserve_in_full_campaign(db, exchange):
    ex = await exchange(quantity=1)
    lifecycle = SlotLifecycle(db)
    await lifecycle.reserve_in_campaign(ex["pub1"], ex["campaign"].id, ex["asset1"].id)
    with pytest.raises(StateConflictError, match="No open slots"):
        await lifecycle.reserve_in_campaign(ex["pub2"], ex["campaign"].id, ex["asset2"].id)


# ── Proof submission ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_failed_proof_then_successful_retry(db, exchange, page_verifier):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    await SlotLifecycle(db).claim(ex["pub1"], slot_id, ex["asset1"].id)

    slot, verification = await SlotLifecycle(db, page_verifier(NOFOLLOW_PAGE)).submit_proof(ex["pub1"], slot_id, PROOF)
    assert verification.anchor_text_match is True
    assert verification.link_type_match is False
    assert slot.status == "submitted"
    assert slot.verified is False
    assert slot.proof_url == PROOF
    assert json.loads(slot.verification_details) == verification.details
    ledger = CreditLedger(db)
    assert await ledger.balance(ex["pub1"].id) == 0

    slot, verification = await SlotLifecycle(db, page_verifier(DOFOLLOW_PAGE)).retry_proof(
        ex["pub1"], slot_id, "https://pub.example.org/fixed",
    )
    assert verification.verified is True
    assert slot.status == "approved"
    assert slot.verified is True
    assert slot.proof_url == "https://pub.example.org/fixed"
    assert await ledger.balance(ex["pub1"].id) == 50
    assert await ledger.reconcile(ex["pub1"].id) == 50
    assert (await get_campaign(db, ex["campaign"].id, fresh=True)).filled_slots == 1

    earn = (await db.execute(select(Transaction).where(Transaction.reference_id == slot_id))).scalar_one()
    assert (earn.type, earn.amount, earn.from_user_id, earn.to_user_id) == ("earn", 50, None, ex["pub1"].id)


@pytest.mark.anyio
async def test_failed_retry_stays_submitted(db, exchange, page_verifier):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier("<p>nothing</p>"))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    slot, verification = await lifecycle.retry_proof(ex["pub1"], slot_id, PROOF)

    assert slot.status == "submitted"
    assert verification.link_found is False


@pytest.mark.anyio
async def test_approved_slot_cannot_be_paid_twice(db, exchange, page_verifier):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier(DOFOLLOW_PAGE))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    with pytest.raises(StateConflictError):
        await lifecycle.retry_proof(ex["pub1"], slot_id, PROOF)
    with pytest.raises(StateConflictError):
        await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)
    assert await CreditLedger(db).balance(ex["pub1"].id) == 50


@pytest.mark.anyio
async def test_submit_guards(db, exchange, page_verifier):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier(DOFOLLOW_PAGE))

    with pytest.raises(AuthorizationError):
        await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    with pytest.raises(AuthorizationError):
        await lifecycle.submit_proof(ex["pub2"], slot_id, PROOF)
    with pytest.raises(ValidationError):
        await lifecycle.submit_proof(ex["pub1"], slot_id, "ftp://pub.example.org/post")
    with pytest.raises(StateConflictError):
        await lifecycle.retry_proof(ex["pub1"], slot_id, PROOF)


@pytest.mark.anyio
async def test_last_approval_completes_campaign(db, exchange, page_verifier):
    ex = await exchange(quantity=1)
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier(DOFOLLOW_PAGE))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    campaign = await get_campaign(db, ex["campaign"].id, fresh=True)
    assert (campaign.filled_slots, campaign.status) == (1, "completed")


# ── Publisher cancellation ───────────────────────────────────────────

@pytest.mark.anyio
@pytest.mark.parametrize("page, expected_before", [(None, "reserved"), (NOFOLLOW_PAGE, "submitted")])
async def test_cancel_claim_returns_slot_to_pool(db, exchange, page_verifier, page, expected_before):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier(page or ""))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    if page:
        await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)
    assert (await lifecycle.get_slot(slot_id, fresh=True)).status == expected_before

    slot = await lifecycle.cancel_claim(ex["pub1"], slot_id)

    assert slot.status == "open"
    assert slot.publisher_id is None
    assert slot.publisher_asset_id is None
    assert slot.proof_url is None
    assert slot.verified is None
    assert slot.reserved_at is None and slot.submitted_at is None
    assert await CreditLedger(db).balance(ex["owner"].id) == 0
    assert (await get_campaign(db, ex["campaign"].id, fresh=True)).filled_slots == 0

    again = await lifecycle.claim(ex["pub2"], slot_id, ex["asset2"].id)
    assert again.publisher_id == ex["pub2"].id


@pytest.mark.anyio
async def test_only_claimant_can_cancel(db, exchange):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db)
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    with pytest.raises(AuthorizationError):
        await lifecycle.cancel_claim(ex["pub2"], slot_id)


# ── Admin review ─────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_admin_approve_pays_publisher(db, exchange, make_user, page_verifier):
    ex = await exchange()
    admin = await make_user(role="admin")
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier("<p>page not indexed yet</p>"))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    pending = await lifecycle.pending_review()
    assert [row[0].id for row in pending] == [slot_id]

    slot = await lifecycle.admin_review(admin, slot_id, "approve", "Checked manually")

    assert slot.status == "approved"
    assert slot.admin_notes == "Checked manually"
    assert await CreditLedger(db).balance(ex["pub1"].id) == 50
    assert (await get_campaign(db, ex["campaign"].id, fresh=True)).filled_slots == 1
    with pytest.raises(StateConflictError):
        await lifecycle.admin_review(admin, slot_id, "approve")


@pytest.mark.anyio
async def test_admin_reject_then_publisher_releases(db, exchange, make_user, page_verifier):
    ex = await exchange()
    admin = await make_user(role="admin")
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier("<p></p>"))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    slot = await lifecycle.admin_review(admin, slot_id, "reject", "No link on page")
    assert slot.status == "rejected"
    assert await CreditLedger(db).balance(ex["pub1"].id) == 0

    slot = await lifecycle.cancel_claim(ex["pub1"], slot_id)
    assert slot.status == "open"


@pytest.mark.anyio
async def test_admin_review_requires_admin_and_valid_action(db, exchange, make_user):
    ex = await exchange()
    admin = await make_user(role="admin")
    lifecycle = SlotLifecycle(db)
    with pytest.raises(AuthorizationError):
        await lifecycle.admin_review(ex["pub1"], ex["slot_ids"][0], "approve")
    with pytest.raises(ValidationError):
        await lifecycle.admin_review(admin, ex["slot_ids"][0], "maybe")
    with pytest.raises(StateConflictError):
        await lifecycle.admin_review(admin, ex["slot_ids"][0], "approve")


# ── Queries ──────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_given_and_received_listings(db, exchange, page_verifier):
    ex = await exchange()
    slot_id = ex["slot_ids"][0]
    lifecycle = SlotLifecycle(db, page_verifier(DOFOLLOW_PAGE))
    await lifecycle.claim(ex["pub1"], slot_id, ex["asset1"].id)
    await lifecycle.claim(ex["pub2"], ex["slot_ids"][1], ex["asset2"].id)
    await lifecycle.submit_proof(ex["pub1"], slot_id, PROOF)

    given = await lifecycle.approved_given(ex["pub1"])
    received = await lifecycle.approved_received(ex["owner"])
    mine = await lifecycle.publisher_slots(ex["pub2"])

    assert [(s.id, a.domain) for s, _c, a in given] == [(slot_id, ex["asset1"].domain)]
    assert [s.id for s, _c, _a in received] == [slot_id]
    assert [s.status for s, _c, _a in mine] == ["reserved"]
