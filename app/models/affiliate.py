"""Affiliate, referral code and attribution models.

Supports:
- Affiliates with lifetime conversion/revenue counters and a current tier
- Multiple referral codes per affiliate (rotation, campaigns)
- Append-only click/visit touches, marked converted at most once
- Per-tenant attribution model configuration
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, BigInteger, Text
from sqlalchemy import UniqueConstraint, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType

if TYPE_CHECKING:
    from app.models.commission import CommissionTier, PlanAssignment


class AffiliateStatus(str, Enum):
    """Affiliate status. Affiliates are never deleted, only paused or terminated."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    TERMINATED = "TERMINATED"


class TouchType(str, Enum):
    """How the touch reached us."""
    CLICK = "CLICK"
    IMPRESSION = "IMPRESSION"
    POSTBACK = "POSTBACK"


class AttributionModel(str, Enum):
    """Multi-touch attribution models."""
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"
    TIME_DECAY = "TIME_DECAY"
    POSITION = "POSITION"           # 40% first, 40% last, 20% spread over the middle


class Affiliate(Base):
    """
    A referring party belonging to exactly one tenant.

    Lifetime counters are written only by the commission engine and the
    current tier only by the tier service.
    """
    __tablename__ = "affiliates"
    __table_args__ = (
        CheckConstraint("lifetime_conversions >= 0", name="ck_affiliates_conversions_non_negative"),
        CheckConstraint("lifetime_revenue_cents >= 0", name="ck_affiliates_revenue_non_negative"),
        Index("ix_affiliates_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="ACTIVE",
        comment="ACTIVE, PAUSED, TERMINATED"
    )

    # Lifetime stats
    lifetime_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Tier
    current_tier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("commission_tiers.id", ondelete="SET NULL"),
        nullable=True
    )
    tier_qualified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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
    current_tier: Mapped[Optional["CommissionTier"]] = relationship("CommissionTier", foreign_keys=[current_tier_id])
    referral_codes: Mapped[List["ReferralCode"]] = relationship("ReferralCode", back_populates="affiliate")
    plan_assignments: Mapped[List["PlanAssignment"]] = relationship("PlanAssignment", back_populates="affiliate")

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Affiliate {self.display_name} ({self.status})>"


class ReferralCode(Base):
    """A short code bound to one affiliate. Only `is_active` changes after issue."""
    __tablename__ = "referral_codes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_referral_codes_tenant_code"),
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
        nullable=False,
        index=True
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False, comment="Stored trimmed and UPPERCASE")
    description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    affiliate: Mapped["Affiliate"] = relationship("Affiliate", back_populates="referral_codes")

    def __repr__(self) -> str:
        return f"<ReferralCode {self.code}>"


class AttributionTouch(Base):
    """
    One visit/click against a referral code.

    Append-only: a new row per hit. `converted_at` is set at most once.
    """
    __tablename__ = "attribution_touches"
    __table_args__ = (
        Index("ix_attribution_touches_fingerprint", "tenant_id", "visitor_fingerprint", "touched_at"),
        Index("ix_attribution_touches_cookie", "tenant_id", "cookie_id", "touched_at"),
        Index("ix_attribution_touches_affiliate", "affiliate_id", "touched_at"),
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
    referral_code_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("referral_codes.id", ondelete="RESTRICT"),
        nullable=False
    )
    ref_code: Mapped[str] = mapped_column(String(50), nullable=False, comment="Code as resolved at touch time")

    # Visitor identification (hashed upstream, never raw PII)
    visitor_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    cookie_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    ip_address_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Source
    landing_page: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referrer_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    utm_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sub_id_1: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sub_id_2: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sub_id_3: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    touch_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="CLICK",
        comment="CLICK, IMPRESSION, POSTBACK"
    )

    touched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<AttributionTouch {self.ref_code} converted={self.converted_at is not None}>"


class AttributionConfig(Base):
    """Per-tenant attribution settings. Tenants without a row use the settings defaults."""
    __tablename__ = "attribution_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, unique=True)

    new_customer_model: Mapped[str] = mapped_column(String(50), nullable=False, default="FIRST_CLICK")
    returning_customer_model: Mapped[str] = mapped_column(String(50), nullable=False, default="LAST_CLICK")
    cookie_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<AttributionConfig new={self.new_customer_model} returning={self.returning_customer_model}>"
