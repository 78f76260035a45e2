"""
Commission rate selection and amount computation.

Pure functions over plan/tier/promotion rows: nothing here touches a
session, so the precedence rules can be exercised without a database.

Rate precedence for a payment:
    first payment  -> initial rate, else base rate
    recurring      -> recurring rate (only if recurring_enabled),
                      else base rate if applies_to == ALL_PAYMENTS,
                      else zero
    tier override  -> replaces a non-zero selection when plan.tier_enabled
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional, Sequence

from app.core.datetime_utils import as_utc
from app.core.exceptions import PlanConfigurationError
from app.models.commission import (
    BPS_DENOMINATOR, CommissionPlan, CommissionPromotion, CommissionTier,
    PlanAppliesTo, PlanType,
)

# Cycles after which recurring_decay_pct kicks in
RECURRING_DECAY_AFTER_CYCLE = 12


class RateSource(str, Enum):
    """Which configured rate a commission was priced from."""
    INITIAL = "INITIAL"
    RECURRING = "RECURRING"
    BASE = "BASE"
    TIER = "TIER"
    NONE = "NONE"


@dataclass(frozen=True)
class SelectedRate:
    plan_type: str
    source: RateSource
    percent_bps: Optional[int] = None
    flat_amount_cents: Optional[int] = None

    @property
    def is_zero(self) -> bool:
        return self.source == RateSource.NONE


@dataclass
class CommissionBreakdown:
    """Amounts for one conversion event, in cents."""
    base_commission_cents: int = 0
    promotion_bonus_cents: int = 0
    tier_bonus_cents: int = 0
    product_adjustment_cents: int = 0
    rate_source: RateSource = RateSource.NONE
    promotion_ids: list[uuid.UUID] = field(default_factory=list)
    multiplier: Decimal = Decimal("1")
    notes: list[str] = field(default_factory=list)

    @property
    def commission_amount_cents(self) -> int:
        return (
            self.base_commission_cents
            + self.promotion_bonus_cents
            + self.tier_bonus_cents
            + self.product_adjustment_cents
        )


def round_cents(value: Decimal) -> int:
    """Round half up to whole cents."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, bps: int) -> int:
    return round_cents(Decimal(amount_cents) * Decimal(bps) / Decimal(BPS_DENOMINATOR))


# ==================== Plan validation ====================

def _bps_in_range(value: Optional[int]) -> bool:
    return value is None or 0 <= value <= BPS_DENOMINATOR


def plan_configuration_problems(plan: CommissionPlan) -> list[str]:
    """List every reason the plan cannot be priced. Empty means usable."""
    problems = []
    percent_fields = {
        "percent_bps": plan.percent_bps,
        "initial_percent_bps": plan.initial_percent_bps,
        "recurring_percent_bps": plan.recurring_percent_bps,
    }
    flat_fields = {
        "flat_amount_cents": plan.flat_amount_cents,
        "initial_flat_amount_cents": plan.initial_flat_amount_cents,
        "recurring_flat_amount_cents": plan.recurring_flat_amount_cents,
    }

    if plan.plan_type == PlanType.PERCENT.value:
        if plan.percent_bps is None:
            problems.append("PERCENT plan has no percent_bps")
        set_flat = [name for name, value in flat_fields.items() if value is not None]
        if set_flat:
            problems.append(f"PERCENT plan also sets flat fields: {', '.join(set_flat)}")
    elif plan.plan_type == PlanType.FLAT.value:
        if plan.flat_amount_cents is None:
            problems.append("FLAT plan has no flat_amount_cents")
        set_bps = [name for name, value in percent_fields.items() if value is not None]
        if set_bps:
            problems.append(f"FLAT plan also sets percent fields: {', '.join(set_bps)}")
    else:
        problems.append(f"Unknown plan_type {plan.plan_type!r}")

    for name, value in percent_fields.items():
        if not _bps_in_range(value):
            problems.append(f"{name}={value} outside [0, {BPS_DENOMINATOR}]")
    for name, value in flat_fields.items():
        if value is not None and value < 0:
            problems.append(f"{name}={value} is negative")

    if plan.hold_days is not None and plan.hold_days < 0:
        problems.append(f"hold_days={plan.hold_days} is negative")
    if plan.recurring_months is not None and plan.recurring_months < 0:
        problems.append(f"recurring_months={plan.recurring_months} is negative")
    if plan.recurring_decay_pct is not None and not 0 <= plan.recurring_decay_pct <= 100:
        problems.append(f"recurring_decay_pct={plan.recurring_decay_pct} outside [0, 100]")
    if plan.applies_to is not None and plan.applies_to not in (
        PlanAppliesTo.FIRST_PAYMENT_ONLY.value, PlanAppliesTo.ALL_PAYMENTS.value
    ):
        problems.append(f"Unknown applies_to {plan.applies_to!r}")

    return problems


def validate_plan(plan: CommissionPlan) -> None:
    """Raise PlanConfigurationError if the plan cannot be priced."""
    problems = plan_configuration_problems(plan)
    if problems:
        raise PlanConfigurationError(problems)


# ==================== Rate selection ====================

def _rate(plan: CommissionPlan, source: RateSource, percent_bps: Optional[int],
          flat_amount_cents: Optional[int]) -> SelectedRate:
    if plan.plan_type == PlanType.PERCENT.value:
        return SelectedRate(plan_type=plan.plan_type, source=source, percent_bps=percent_bps)
    return SelectedRate(plan_type=plan.plan_type, source=source, flat_amount_cents=flat_amount_cents)


def _override_for(plan: CommissionPlan, percent_bps: Optional[int], flat_amount_cents: Optional[int]) -> bool:
    if plan.plan_type == PlanType.PERCENT.value:
        return percent_bps is not None
    return flat_amount_cents is not None


def zero_rate(plan_type: str = PlanType.PERCENT.value) -> SelectedRate:
    return SelectedRate(plan_type=plan_type, source=RateSource.NONE)


def select_rate(plan: CommissionPlan, is_first_payment: bool) -> SelectedRate:
    """Pick the rate that prices this payment under the plan's precedence rules."""
    if is_first_payment:
        if _override_for(plan, plan.initial_percent_bps, plan.initial_flat_amount_cents):
            return _rate(plan, RateSource.INITIAL, plan.initial_percent_bps, plan.initial_flat_amount_cents)
        return _rate(plan, RateSource.BASE, plan.percent_bps, plan.flat_amount_cents)

    if not plan.recurring_enabled:
        return zero_rate(plan.plan_type)

    if _override_for(plan, plan.recurring_percent_bps, plan.recurring_flat_amount_cents):
        return _rate(plan, RateSource.RECURRING, plan.recurring_percent_bps, plan.recurring_flat_amount_cents)

    if plan.applies_to == PlanAppliesTo.ALL_PAYMENTS.value:
        return _rate(plan, RateSource.BASE, plan.percent_bps, plan.flat_amount_cents)

    return zero_rate(plan.plan_type)


def apply_tier_override(rate: SelectedRate, plan: CommissionPlan,
                        tier: Optional[CommissionTier]) -> SelectedRate:
    """Replace a non-zero rate with the tier's override for the plan type."""
    if rate.is_zero or tier is None or not plan.tier_enabled or tier.plan_id != plan.id:
        return rate
    if not _override_for(plan, tier.percent_bps, tier.flat_amount_cents):
        return rate
    return _rate(plan, RateSource.TIER, tier.percent_bps, tier.flat_amount_cents)


def recurring_multiplier(plan: CommissionPlan, is_first_payment: bool,
                         recurring_cycle: Optional[int]) -> Decimal:
    """
    Scale applied to a recurring commission.

    Zero beyond recurring_months; recurring_decay_pct after cycle 12. An
    unknown cycle under a configured cap is priced at zero.
    """
    if is_first_payment or not plan.recurring_enabled:
        return Decimal("1")

    if plan.recurring_months is not None:
        if recurring_cycle is None or recurring_cycle > plan.recurring_months:
            return Decimal("0")

    if (
        plan.recurring_decay_pct is not None
        and recurring_cycle is not None
        and recurring_cycle > RECURRING_DECAY_AFTER_CYCLE
    ):
        return Decimal(plan.recurring_decay_pct) / Decimal(100)

    return Decimal("1")


def compute_amount(rate: SelectedRate, event_amount_cents: int) -> int:
    """Base commission for the rate. Flat amounts never exceed the transaction."""
    if rate.is_zero or event_amount_cents <= 0:
        return 0
    if rate.plan_type == PlanType.PERCENT.value:
        return percent_of(event_amount_cents, rate.percent_bps or 0)
    return min(rate.flat_amount_cents or 0, event_amount_cents)


# ==================== Promotions ====================

def _normalized_codes(codes: Optional[Iterable[str]]) -> set[str]:
    return {c.strip().upper() for c in codes or [] if c}


def promotion_applies(
    promotion: CommissionPromotion,
    affiliate_id: uuid.UUID,
    ref_code: Optional[str],
    event_amount_cents: int,
    at: datetime,
) -> bool:
    if not promotion.is_active:
        return False
    if not (as_utc(promotion.starts_at) <= as_utc(at) <= as_utc(promotion.ends_at)):
        return False
    if promotion.max_uses is not None and promotion.uses_count >= promotion.max_uses:
        return False
    if promotion.min_order_cents is not None and event_amount_cents < promotion.min_order_cents:
        return False
    if promotion.affiliate_ids:
        if str(affiliate_id) not in {str(a) for a in promotion.affiliate_ids}:
            return False
    if promotion.ref_codes:
        if not ref_code or ref_code.strip().upper() not in _normalized_codes(promotion.ref_codes):
            return False
    return True


def promotion_bonus_cents(promotion: CommissionPromotion, event_amount_cents: int) -> int:
    bonus = promotion.bonus_flat_cents or 0
    if promotion.bonus_percent_bps:
        bonus += percent_of(event_amount_cents, promotion.bonus_percent_bps)
    return bonus


def eligible_promotions(
    promotions: Iterable[CommissionPromotion],
    affiliate_id: uuid.UUID,
    ref_code: Optional[str],
    event_amount_cents: int,
    at: datetime,
) -> list[CommissionPromotion]:
    """Every promotion that applies to this payment; their bonuses stack."""
    return sorted(
        (p for p in promotions if promotion_applies(p, affiliate_id, ref_code, event_amount_cents, at)),
        key=lambda p: str(p.id),
    )


# ==================== Breakdown ====================

def compute_breakdown(
    plan: CommissionPlan,
    event_amount_cents: int,
    is_first_payment: bool,
    recurring_cycle: Optional[int] = None,
    tier: Optional[CommissionTier] = None,
    promotions: Sequence[CommissionPromotion] = (),
) -> CommissionBreakdown:
    """
    Price one conversion event.

    Tier bonuses are never part of a conversion breakdown; they are issued
    as separate events on upgrade. Raises PlanConfigurationError for a
    malformed plan.
    """
    validate_plan(plan)

    rate = apply_tier_override(select_rate(plan, is_first_payment), plan, tier)
    multiplier = recurring_multiplier(plan, is_first_payment, recurring_cycle)
    breakdown = CommissionBreakdown(rate_source=rate.source, multiplier=multiplier)

    if rate.is_zero:
        breakdown.notes.append("no rate applies to this payment")
        return breakdown
    if multiplier == 0:
        breakdown.rate_source = RateSource.NONE
        breakdown.notes.append("recurring cycle outside the plan's recurring window")
        return breakdown

    breakdown.base_commission_cents = round_cents(Decimal(compute_amount(rate, event_amount_cents)) * multiplier)

    paying = [p for p in promotions if promotion_bonus_cents(p, event_amount_cents) > 0]
    if paying:
        total = sum(promotion_bonus_cents(p, event_amount_cents) for p in paying)
        breakdown.promotion_bonus_cents = round_cents(Decimal(total) * multiplier)
        breakdown.promotion_ids = [p.id for p in paying]

    return breakdown

