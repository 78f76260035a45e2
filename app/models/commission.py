"""Commission plan, tier and ledger models for the affiliate program.

Supports:
- Versioned per-tenant commission plans (flat or percentage)
- Separate first-payment and recurring-payment rates
- Time-ranged plan assignments (one open assignment per affiliate)
- Tier catalog with rate overrides and one-time bonuses
- Promotions with usage limits
- Commission event ledger with hold and clawback lifecycle
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, BigInteger, Text
from sqlalchemy import UniqueConstraint, Index, CheckConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, JSONType

if TYPE_CHECKING:
    from app.models.affiliate import Affiliate


class PlanType(str, Enum):
    """How a plan prices a conversion."""
    FLAT = "FLAT"                   # Fixed cents per conversion
    PERCENT = "PERCENT"             # Basis points of the transaction amount


class PlanAppliesTo(str, Enum):
    """Which payments a plan's base rate covers."""
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"
    ALL_PAYMENTS = "ALL_PAYMENTS"


class CommissionEventStatus(str, Enum):
    """Commission event lifecycle status."""
    PENDING = "PENDING"             # Inside the hold period
    APPROVED = "APPROVED"           # Payable
    PAID = "PAID"                   # Included in a payout run
    CLAWED_BACK = "CLAWED_BACK"     # Voided before payout


class CommissionEventKind(str, Enum):
    """Stored in `attribution_model`; tells ledger rows apart."""
    CONVERSION = "CONVERSION"       # Priced from a payment
    TIER_BONUS = "TIER_BONUS"       # One-time bonus on tier upgrade
    REVERSAL = "REVERSAL"           # Negative entry offsetting a PAID event


BPS_DENOMINATOR = 10000


class CommissionPlan(Base):
    """
    Commission plan definition. Owned by tenant administrators; the engine only reads it.

    Exactly one of flat_amount_cents/percent_bps is meaningful per plan_type.
    Initial and recurring rates fall back to the base rate when unset.
    """
    __tablename__ = "commission_plans"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", "version", name="uq_commission_plans_tenant_name_version"),
        CheckConstraint("percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)",
                        name="ck_commission_plans_percent_bps"),
        CheckConstraint("initial_percent_bps IS NULL OR (initial_percent_bps >= 0 AND initial_percent_bps <= 10000)",
                        name="ck_commission_plans_initial_percent_bps"),
        CheckConstraint("recurring_percent_bps IS NULL OR (recurring_percent_bps >= 0 AND recurring_percent_bps <= 10000)",
                        name="ck_commission_plans_recurring_percent_bps"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    plan_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PERCENT",
        comment="FLAT, PERCENT"
    )

    # Base rate
    flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # First-payment override
    initial_flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    initial_percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Recurring-payment override
    recurring_flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recurring_percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    applies_to: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="FIRST_PAYMENT_ONLY",
        comment="FIRST_PAYMENT_ONLY, ALL_PAYMENTS"
    )

    # Hold & clawback
    hold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    clawback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Recurring
    recurring_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_months: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Max recurring cycles that earn commission, NULL = unlimited"
    )
    recurring_decay_pct: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Percent of the recurring rate paid after cycle 12"
    )

    # Tiers
    tier_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    tiers: Mapped[List["CommissionTier"]] = relationship(
        "CommissionTier",
        back_populates="plan",
        order_by="CommissionTier.level"
    )
    promotions: Mapped[List["CommissionPromotion"]] = relationship("CommissionPromotion", back_populates="plan")

    def __repr__(self) -> str:
        return f"<CommissionPlan {self.name} v{self.version} ({self.plan_type})>"


class PlanAssignment(Base):
    """
    Time-ranged binding of an affiliate to a plan.

    At most one row per affiliate has effective_to IS NULL; the partial
    unique index enforces it in the store.
    """
    __tablename__ = "plan_assignments"
    __table_args__ = (
        Index(
            "uq_plan_assignments_one_open",
            "affiliate_id",
            unique=True,
            postgresql_where=text("effective_to IS NULL"),
            sqlite_where=text("effective_to IS NULL"),
        ),
        Index("ix_plan_assignments_plan", "plan_id", "effective_to"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliates.id", ondelete="RESTRICT"),
        nullable=False
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_plans.id", ondelete="RESTRICT"),
        nullable=False
    )

    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    affiliate: Mapped["Affiliate"] = relationship("Affiliate", back_populates="plan_assignments")
    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan")

    @property
    def is_open(self) -> bool:
        return self.effective_to is None

    def __repr__(self) -> str:
        return f"<PlanAssignment affiliate={self.affiliate_id} plan={self.plan_id} open={self.is_open}>"


class CommissionTier(Base):
    """Tier within a plan, totally ordered by level."""
    __tablename__ = "commission_tiers"
    __table_args__ = (
        UniqueConstraint("plan_id", "level", name="uq_commission_tiers_plan_level"),
        UniqueConstraint("plan_id", "name", name="uq_commission_tiers_plan_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)

    # Qualification thresholds (both must be met)
    min_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Rate override, used when the plan has tier_enabled
    percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    bonus_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="One-time bonus when reaching this tier"
    )
    perks: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan", back_populates="tiers")

    def qualifies(self, lifetime_conversions: int, lifetime_revenue_cents: int) -> bool:
        return (
            lifetime_conversions >= self.min_conversions
            and lifetime_revenue_cents >= self.min_revenue_cents
        )

    def __repr__(self) -> str:
        return f"<CommissionTier {self.name} (level {self.level})>"


class CommissionPromotion(Base):
    """Time-boxed bonus on top of the plan rate, optionally targeted at affiliates or codes."""
    __tablename__ = "commission_promotions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    bonus_percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bonus_flat_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    min_order_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uses_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Targeting: NULL or empty means everyone on the plan
    affiliate_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    ref_codes: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan", back_populates="promotions")

    def __repr__(self) -> str:
        return f"<CommissionPromotion {self.name} uses={self.uses_count}/{self.max_uses}>"


class CommissionEvent(Base):
    """
    Commission ledger entry.

    Created exactly once per (tenant_id, source_event_id). Amounts never
    change after creation; only status and its timestamps do.
    commission_amount_cents = base + tier bonus + promotion bonus + product adjustment.
    """
    __tablename__ = "commission_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_event_id", name="uq_commission_events_tenant_source"),
        Index("ix_commission_events_affiliate_status", "affiliate_id", "status"),
        Index("ix_commission_events_status_hold", "status", "hold_until"),
        Index("ix_commission_events_source_object", "tenant_id", "source_object_id"),
        Index("ix_commission_events_subscription", "tenant_id", "subscription_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliates.id", ondelete="RESTRICT"),
        nullable=False
    )
    plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_plans.id", ondelete="RESTRICT"),
        nullable=True,
        comment="NULL when the affiliate had no open plan assignment"
    )
    tier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_tiers.id", ondelete="RESTRICT"),
        nullable=True
    )
    touch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("attribution_touches.id", ondelete="SET NULL"),
        nullable=True
    )
    reversal_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_events.id", ondelete="RESTRICT"),
        nullable=True
    )

    # Idempotency key: gateway event id, or derived key for bonuses/reversals
    source_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Payment object (charge/invoice) used to find events on refund
    source_object_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Amounts (cents)
    event_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    commission_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    base_commission_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tier_bonus_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    promotion_bonus_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    product_adjustment_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_cycle: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    attribution_model: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="CONVERSION",
        comment="CONVERSION, TIER_BONUS, REVERSAL"
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        comment="PENDING, APPROVED, PAID, CLAWED_BACK"
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hold_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    clawed_back_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    clawback_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Referral code, plan name/version, tier name, promotion, rate source. Never patient data.
    extra_info: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_conversion(self) -> bool:
        return self.attribution_model == CommissionEventKind.CONVERSION.value

    def __repr__(self) -> str:
        return f"<CommissionEvent {self.source_event_id} {self.commission_amount_cents}c {self.status}>"
