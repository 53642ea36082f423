"""
Backlink Exchange — Database Models
Users, publisher assets, funded campaigns, claimable slots and the credit ledger.
Status columns are stored as strings; the allowed values live in the enums below.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime,
    ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class AssetStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISABLED = "disabled"


class CampaignStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SlotStatus(str, enum.Enum):
    OPEN = "open"
    RESERVED = "reserved"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class LinkType(str, enum.Enum):
    HYPERLINK_DOFOLLOW = "hyperlink_dofollow"
    HYPERLINK_NOFOLLOW = "hyperlink_nofollow"
    BRAND_MENTION = "brand_mention"


class TransactionType(str, enum.Enum):
    EARN = "earn"
    SPEND = "spend"
    ADMIN_ADD = "admin_add"
    ADMIN_REMOVE = "admin_remove"
    REFUND = "refund"


class ReferenceType(str, enum.Enum):
    CAMPAIGN = "campaign"
    SLOT = "slot"
    MANUAL = "manual"
    SIGNUP = "signup"


# ══════════════════════════════════════════════════════════════════════
#  USERS — Identity comes from the external provider (external_id = token sub)
# ══════════════════════════════════════════════════════════════════════

class User(Base):
    """Exchange participant. Balance is only ever changed by the credit ledger."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=True)
    photo_url: Mapped[str] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.USER.value)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        Index("ix_users_external_id", "external_id"),
        Index("ix_users_role", "role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_suspended(self) -> bool:
        return self.status == UserStatus.SUSPENDED.value


# ══════════════════════════════════════════════════════════════════════
#  ASSETS — Publisher websites, reviewed by admins
# ══════════════════════════════════════════════════════════════════════

class Asset(Base):
    """A publisher-owned website. Only approved assets may claim slots."""
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    industry: Mapped[str] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AssetStatus.PENDING.value)
    admin_notes: Mapped[str] = mapped_column(Text, nullable=True)
    # Filled asynchronously by the external metrics/enrichment service; may be stale or absent
    domain_rating: Mapped[int] = mapped_column(Integer, nullable=True)
    traffic: Mapped[int] = mapped_column(Integer, nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=True)
    metrics_fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_assets_owner_id", "owner_id"),
        Index("ix_assets_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS — Funded requests for N placements
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """An advertiser's funded batch request. quantity * credit_reward is escrowed at creation."""
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=True)  # null for brand mentions
    target_keyword: Mapped[str] = mapped_column(String(255), nullable=False)
    link_type: Mapped[str] = mapped_column(String(30), nullable=False)
    placement_format: Mapped[str] = mapped_column(String(50), nullable=False)
    industry: Mapped[str] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    filled_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_reward: Mapped[int] = mapped_column(Integer, nullable=False)
    publisher_notes: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CampaignStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    slots: Mapped[list["Slot"]] = relationship("Slot", back_populates="campaign", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_campaigns_quantity_positive"),
        CheckConstraint("credit_reward >= 1", name="ck_campaigns_reward_positive"),
        CheckConstraint("filled_slots >= 0 AND filled_slots <= quantity", name="ck_campaigns_filled_within_quantity"),
        Index("ix_campaigns_owner_id", "owner_id"),
        Index("ix_campaigns_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SLOTS — One claimable unit of campaign inventory
# ══════════════════════════════════════════════════════════════════════

class Slot(Base):
    """
    One placement unit. Requirement columns (target_url … industry) override the
    campaign's when set. publisher_id / publisher_asset_id are set at claim time
    and cleared when the claim is cancelled.
    """
    __tablename__ = "slots"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    target_url: Mapped[str] = mapped_column(Text, nullable=True)
    target_keyword: Mapped[str] = mapped_column(String(255), nullable=True)
    link_type: Mapped[str] = mapped_column(String(30), nullable=True)
    placement_format: Mapped[str] = mapped_column(String(50), nullable=True)
    credit_reward: Mapped[int] = mapped_column(Integer, nullable=True)
    industry: Mapped[str] = mapped_column(String(100), nullable=True)
    publisher_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    publisher_asset_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id", ondelete="SET NULL"), nullable=True)
    proof_url: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SlotStatus.OPEN.value)
    reserved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    admin_notes: Mapped[str] = mapped_column(Text, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=True)  # None = never verified
    verification_details: Mapped[str] = mapped_column(Text, nullable=True)  # JSON list of strings
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="slots")

    __table_args__ = (
        Index("ix_slots_campaign_id_status", "campaign_id", "status"),
        Index("ix_slots_publisher_id", "publisher_id"),
        Index("ix_slots_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  TRANSACTIONS — Append-only credit ledger
# ══════════════════════════════════════════════════════════════════════

class Transaction(Base):
    """
    Immutable ledger entry. A null from_user_id means system/escrow-sourced,
    a null to_user_id means the credits left circulation (spend, admin removal).
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    to_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(20), nullable=True)
    reference_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)  # slot may be deleted later
    description: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "from_user_id IS NOT NULL OR to_user_id IS NOT NULL",
            name="ck_transactions_has_party",
        ),
        Index("ix_transactions_from_user_id", "from_user_id"),
        Index("ix_transactions_to_user_id", "to_user_id"),
        Index("ix_transactions_reference", "reference_type", "reference_id"),
    )
