from app.models.affiliate import (
    Affiliate, AffiliateStatus, AttributionConfig, AttributionModel, AttributionTouch,
    ReferralCode, TouchType,
)
from app.models.commission import (
    BPS_DENOMINATOR, CommissionEvent, CommissionEventKind, CommissionEventStatus,
    CommissionPlan, CommissionPromotion, CommissionTier, PlanAppliesTo, PlanAssignment,
    PlanType,
)

__all__ = [
    "Affiliate", "AffiliateStatus", "AttributionConfig", "AttributionModel", "AttributionTouch",
    "ReferralCode", "TouchType",
    "BPS_DENOMINATOR", "CommissionEvent", "CommissionEventKind", "CommissionEventStatus",
    "CommissionPlan", "CommissionPromotion", "CommissionTier", "PlanAppliesTo", "PlanAssignment",
    "PlanType",
]
