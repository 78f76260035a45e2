"""Internal API endpoints for affiliate attribution and commissions."""
from typing import List, Optional
from uuid import UUID
from datetime import datetime

from fastapi import APIRouter, HTTPException, status, Query

from app.api.deps import Attribution, Engine, Payments, Plans, Reports, Tiers
from app.schemas.commission import (
    # Payment events
    PaymentSucceeded, PaymentRefunded, RefundOutcome,
    # Attribution
    TouchCreate, TouchResponse, ConversionCreate, AttributionResult, VisitorContext,
    # Ledger
    CommissionEventResponse, ClawbackRequest, MarkPaidRequest, ApprovalRunResult,
    # Plans & tiers
    PlanReassignRequest, PlanAssignmentResponse, TierProgress, TierRecalculationSummary,
    # Reports
    CommissionStatsReport, AffiliateSummaryReport,
)

router = APIRouter()


# ==================== Payment Events ====================

@router.post("/payments/succeeded", response_model=Optional[CommissionEventResponse])
async def payment_succeeded(payment: PaymentSucceeded, payments: Payments):
    """Record the commission for a successful payment. Returns null when nothing is attributable."""
    return await payments.handle_payment_succeeded(payment)


@router.post("/payments/refunded", response_model=List[RefundOutcome])
async def payment_refunded(refund: PaymentRefunded, payments: Payments):
    """Claw back or reverse every commission produced by the refunded payment object."""
    return await payments.handle_payment_refunded(refund)


# ==================== Attribution ====================

@router.post("/touches", response_model=TouchResponse, status_code=status.HTTP_201_CREATED)
async def record_touch(touch_in: TouchCreate, attribution: Attribution):
    """Record a referral link visit."""
    touch_id = await attribution.record_touch(
        touch_in.referral_code,
        VisitorContext.model_validate(touch_in.model_dump(exclude={"referral_code", "touched_at"})),
        touched_at=touch_in.touched_at,
    )
    return TouchResponse(touch_id=touch_id)


@router.post("/conversions", response_model=Optional[TouchResponse])
async def record_conversion(conversion_in: ConversionCreate, attribution: Attribution):
    """Mark the visitor's most recent open touch as converted."""
    touch = await attribution.record_conversion(
        VisitorContext.model_validate(conversion_in.model_dump(exclude={"converted_at"})),
        converted_at=conversion_in.converted_at,
    )
    if touch is None:
        return None
    return TouchResponse(touch_id=touch.id)


@router.post("/attribution/resolve", response_model=Optional[AttributionResult])
async def resolve_attribution(
    visitor: VisitorContext,
    attribution: Attribution,
    is_new_customer: Optional[bool] = Query(None),
):
    return await attribution.resolve_attribution(visitor, is_new_customer=is_new_customer)


# ==================== Commission Events ====================

@router.get("/events/{event_id}", response_model=CommissionEventResponse)
async def get_commission_event(event_id: UUID, engine: Engine, tenant_id: Optional[UUID] = Query(None)):
    return await engine.get_event(event_id, tenant_id)


@router.post("/events/{event_id}/clawback", response_model=CommissionEventResponse)
async def clawback_commission_event(
    event_id: UUID,
    request: ClawbackRequest,
    engine: Engine,
    tenant_id: Optional[UUID] = Query(None),
):
    """Void a PENDING or APPROVED commission event."""
    return await engine.clawback_commission(event_id, request.reason, tenant_id)


@router.post("/events/{event_id}/reverse", response_model=CommissionEventResponse)
async def reverse_paid_commission_event(
    event_id: UUID,
    request: ClawbackRequest,
    engine: Engine,
    tenant_id: Optional[UUID] = Query(None),
):
    """Offset a PAID commission event with a negative entry."""
    return await engine.reverse_paid_commission(event_id, request.reason, tenant_id)


@router.post("/events/approve-matured", response_model=ApprovalRunResult)
async def approve_matured_commissions(engine: Engine, tenant_id: Optional[UUID] = Query(None)):
    return await engine.approve_matured_commissions(tenant_id=tenant_id)


@router.post("/events/mark-paid", response_model=List[CommissionEventResponse])
async def mark_commissions_paid(request: MarkPaidRequest, engine: Engine):
    """Move APPROVED events to PAID under one payout reference."""
    return await engine.mark_commissions_paid(request.tenant_id, request.event_ids, request.payout_reference)


# ==================== Plans & Tiers ====================

@router.post("/affiliates/{affiliate_id}/plan", response_model=PlanAssignmentResponse)
async def reassign_affiliate_plan(affiliate_id: UUID, request: PlanReassignRequest, plans: Plans):
    """Close the affiliate's open plan assignment and open a new one."""
    return await plans.reassign_plan(
        request.tenant_id, affiliate_id, request.plan_id, effective_from=request.effective_from,
    )


@router.get("/plans/{plan_id}/problems", response_model=List[str])
async def validate_commission_plan(plan_id: UUID, plans: Plans, tenant_id: UUID = Query(...)):
    """List configuration problems with a plan and its tier ladder."""
    return await plans.validate_plan(tenant_id, plan_id)


@router.post("/plans/{plan_id}/tiers/recalculate", response_model=TierRecalculationSummary)
async def recalculate_plan_tiers(plan_id: UUID, tiers: Tiers, tenant_id: UUID = Query(...)):
    return await tiers.recalculate_all_tiers(tenant_id, plan_id)


@router.get("/affiliates/{affiliate_id}/tier-progress", response_model=TierProgress)
async def get_tier_progress(affiliate_id: UUID, tiers: Tiers, plan_id: UUID = Query(...)):
    return await tiers.get_tier_progress(affiliate_id, plan_id)


# ==================== Reports ====================

@router.get("/reports/stats", response_model=CommissionStatsReport)
async def commission_stats(
    reports: Reports,
    tenant_id: UUID = Query(...),
    affiliate_id: Optional[UUID] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
):
    """Per-status and daily commission figures, with small counts suppressed."""
    if start is not None and end is not None and start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end")
    return await reports.get_affiliate_commission_stats(tenant_id, affiliate_id, start, end)


@router.get("/reports/affiliates", response_model=AffiliateSummaryReport)
async def affiliate_summary(
    reports: Reports,
    tenant_id: UUID = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
):
    if start is not None and end is not None and start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end")
    return await reports.get_tenant_affiliate_summary(tenant_id, start, end)
