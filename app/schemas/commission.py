"""Pydantic schemas for the affiliate attribution and commission engine."""
from datetime import datetime
from typing import Optional, List, Dict
from uuid import UUID
from pydantic import BaseModel, Field, model_validator

from app.core.enum_utils import (
    create_uppercase_validator, VALID_ATTRIBUTION_MODELS, VALID_TOUCH_TYPES,
)
from app.schemas.base import BaseResponseSchema, BaseCreateSchema
from app.models.affiliate import AttributionModel, TouchType


# ==================== Attribution Schemas ====================

class VisitorContext(BaseCreateSchema):
    """Who visited. Identifiers arrive pre-hashed; no raw PII is accepted."""
    tenant_id: UUID
    visitor_fingerprint: str = Field(..., min_length=1, max_length=128)
    cookie_id: Optional[str] = Field(None, max_length=128)
    ip_address_hash: Optional[str] = Field(None, max_length=128)
    user_agent: Optional[str] = Field(None, max_length=500)

    landing_page: Optional[str] = None
    referrer_url: Optional[str] = None
    utm_source: Optional[str] = Field(None, max_length=100)
    utm_medium: Optional[str] = Field(None, max_length=100)
    utm_campaign: Optional[str] = Field(None, max_length=100)
    sub_id_1: Optional[str] = Field(None, max_length=100)
    sub_id_2: Optional[str] = Field(None, max_length=100)
    sub_id_3: Optional[str] = Field(None, max_length=100)

    touch_type: TouchType = TouchType.CLICK

    normalize_touch_type = create_uppercase_validator('touch_type', VALID_TOUCH_TYPES)


class TouchCreate(VisitorContext):
    """Inbound referral hit."""
    referral_code: str = Field(..., min_length=1, max_length=50)
    touched_at: Optional[datetime] = None


class TouchResponse(BaseModel):
    touch_id: UUID


class ConversionCreate(VisitorContext):
    converted_at: Optional[datetime] = None


class AffiliateCredit(BaseModel):
    """Share of a conversion credited to one affiliate under a multi-touch model."""
    affiliate_id: UUID
    weight: float = Field(..., ge=0, le=1)


class AttributionResult(BaseModel):
    affiliate_id: UUID
    referral_code_id: UUID
    ref_code: str
    touch_id: UUID
    model: AttributionModel
    confidence: str                         # high, medium, low
    touch_count: int
    credits: List[AffiliateCredit] = []

    normalize_model = create_uppercase_validator('model', VALID_ATTRIBUTION_MODELS)


# ==================== Payment Notification Schemas ====================

class PaymentSucceeded(BaseCreateSchema):
    """
    A "payment succeeded" notification from the payment event source.

    Exactly how the affiliate is identified varies by sender: an explicit
    affiliate id, a referral code, or the visitor context to attribute from.
    """
    tenant_id: UUID
    source_event_id: str = Field(..., min_length=1, max_length=255)
    source_object_id: Optional[str] = Field(None, max_length=255)
    subscription_id: Optional[str] = Field(None, max_length=255)
    amount_cents: int = Field(..., ge=0)
    is_first_payment: bool
    recurring_cycle: Optional[int] = Field(None, ge=1)
    occurred_at: datetime

    affiliate_id: Optional[UUID] = None
    ref_code: Optional[str] = Field(None, max_length=50)
    visitor: Optional[VisitorContext] = None
    is_new_customer: Optional[bool] = None

    @model_validator(mode='after')
    def check_affiliate_reference(self):
        if self.affiliate_id is None and not self.ref_code and self.visitor is None:
            raise ValueError("One of affiliate_id, ref_code or visitor is required")
        return self


class PaymentRefunded(BaseCreateSchema):
    tenant_id: UUID
    source_object_id: str = Field(..., min_length=1, max_length=255)
    reason: str = Field("refund", max_length=500)


# ==================== Commission Event Schemas ====================

class CommissionEventResponse(BaseResponseSchema):
    id: UUID
    tenant_id: UUID
    affiliate_id: UUID
    plan_id: Optional[UUID] = None
    tier_id: Optional[UUID] = None
    reversal_of_id: Optional[UUID] = None
    source_event_id: str
    source_object_id: Optional[str] = None
    event_amount_cents: int
    commission_amount_cents: int
    base_commission_cents: int
    tier_bonus_cents: int
    promotion_bonus_cents: int
    product_adjustment_cents: int
    is_recurring: bool
    recurring_cycle: Optional[int] = None
    attribution_model: str
    status: str
    occurred_at: datetime
    hold_until: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    clawed_back_at: Optional[datetime] = None
    clawback_reason: Optional[str] = None


class ClawbackRequest(BaseCreateSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class RefundOutcome(BaseModel):
    """What refund handling did to one conversion event."""
    event_id: UUID
    action: str                             # CLAWED_BACK, REVERSED, ALREADY_CLAWED_BACK, SKIPPED
    detail: Optional[str] = None
    reversal_event_id: Optional[UUID] = None


class ApprovalRunResult(BaseModel):
    examined: int = 0
    approved: int = 0
    disputed: int = 0
    held: int = 0                           # Fraud screening asked for manual review
    skipped: int = 0


# ==================== Fraud Screening Schemas ====================

class FraudCheckRequest(BaseModel):
    """The payment being screened, as the commission engine sees it."""
    tenant_id: UUID
    affiliate_id: UUID
    source_event_id: str
    event_amount_cents: int
    touch_id: Optional[UUID] = None
    ip_address_hash: Optional[str] = None


class FraudAlert(BaseModel):
    alert_type: str                         # SELF_REFERRAL, DUPLICATE_IP
    severity: str                           # LOW, MEDIUM, HIGH, CRITICAL
    description: str
    evidence: Dict = Field(default_factory=dict)


class FraudCheckResult(BaseModel):
    risk_score: int = 0                     # 0-100
    recommendation: str = "APPROVE"         # APPROVE, REVIEW, REJECT
    alerts: List[FraudAlert] = Field(default_factory=list)

    @property
    def alert_types(self) -> List[str]:
        return [a.alert_type for a in self.alerts]


class MarkPaidRequest(BaseCreateSchema):
    tenant_id: UUID
    event_ids: List[UUID] = Field(..., min_length=1)
    payout_reference: str = Field(..., min_length=1, max_length=100)


# ==================== Plan & Tier Schemas ====================

class TierSummary(BaseResponseSchema):
    id: UUID
    name: str
    level: int


class TierUpgradeResult(BaseModel):
    upgraded: bool
    previous_tier: Optional[TierSummary] = None
    new_tier: Optional[TierSummary] = None
    bonus_awarded: bool = False
    bonus_event_id: Optional[UUID] = None


class TierRecalculationSummary(BaseModel):
    tenant_id: UUID
    plan_id: UUID
    evaluated: int = 0
    upgraded: int = 0
    downgraded: int = 0
    unchanged: int = 0
    failed: int = 0


class TierProgress(BaseModel):
    affiliate_id: UUID
    plan_id: UUID
    lifetime_conversions: int
    lifetime_revenue_cents: int
    current_tier: Optional[TierSummary] = None
    next_tier: Optional[TierSummary] = None
    conversions_needed: int = 0
    revenue_needed_cents: int = 0
    progress_percentage: float = Field(0, ge=0, le=100)
    perks: List[str] = []


class PlanReassignRequest(BaseCreateSchema):
    tenant_id: UUID
    plan_id: UUID
    effective_from: Optional[datetime] = None


class PlanAssignmentResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    plan_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None


# ==================== Reporting Schemas ====================

class ReportSlice(BaseModel):
    """
    One row of an aggregate view after suppression.

    When `suppressed` is true, conversions shows as "<floor>" and the money
    figures are withheld (None) or rounded, depending on configuration.
    """
    label: str
    conversions: Optional[int] = None
    conversions_display: str
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None
    suppressed: bool = False


class CommissionStatsReport(BaseModel):
    tenant_id: UUID
    affiliate_id: Optional[UUID] = None
    period_start: datetime
    period_end: datetime
    totals: ReportSlice
    by_status: Dict[str, ReportSlice] = {}
    daily: List[ReportSlice] = []


class AffiliateSummaryReport(BaseModel):
    tenant_id: UUID
    period_start: datetime
    period_end: datetime
    affiliates: List[ReportSlice] = []
