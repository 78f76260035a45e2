"""
Commission computation engine.

Turns an attributed payment into exactly one CommissionEvent per
(tenant, source event id), keeps the affiliate's lifetime counters in step
with the ledger, and owns the event lifecycle: hold maturation, payout
marking, clawback and reversing entries.

Configuration problems (no open plan assignment, malformed plan) never
raise: the conversion is recorded at zero and the problem is logged.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, List

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.datetime_utils import as_utc, utcnow
from app.core.exceptions import (
    ClawbackNotPermittedError, CommissionEventNotFoundError, PlanConfigurationError,
)
from app.core.transactions import run_serializable
from app.database import async_session_factory, serializable_session_factory
from app.models.affiliate import Affiliate, AffiliateStatus
from app.models.commission import (
    CommissionEvent, CommissionEventKind, CommissionEventStatus, CommissionPlan, CommissionPromotion,
)
from app.schemas.commission import (
    ApprovalRunResult, FraudCheckRequest, FraudCheckResult, RefundOutcome, TierUpgradeResult,
)
from app.services import commission_state_machine as lifecycle
from app.services.commission_rates import CommissionBreakdown, compute_breakdown, eligible_promotions
from app.services.fraud_service import FraudChecker, default_fraud_checker
from app.services.plan_registry import get_affiliate, get_open_assignment, get_plan, get_tier
from app.services.tier_service import TierService

logger = logging.getLogger(__name__)

# Called with a PENDING event before approval; True means disputed/refunded upstream
DisputeChecker = Callable[[CommissionEvent], Awaitable[bool]]


def reversal_key(event_id: uuid.UUID) -> str:
    """Idempotency key of the reversing entry for a PAID event."""
    return f"reversal:{event_id}"


def _decrement_counters(affiliate: Affiliate, event: CommissionEvent) -> None:
    """Undo what a conversion event added, never going below zero."""
    affiliate.lifetime_conversions = max(0, affiliate.lifetime_conversions - 1)
    affiliate.lifetime_revenue_cents = max(0, affiliate.lifetime_revenue_cents - event.event_amount_cents)


class CommissionEngine:
    """Records commission events and moves them through their lifecycle."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        serializable_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        tier_service: Optional[TierService] = None,
        fraud_checker: Optional[FraudChecker] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.serializable_factory = serializable_factory or serializable_session_factory
        self.tier_service = tier_service or TierService(self.session_factory, self.serializable_factory)
        self.fraud_checker = fraud_checker or default_fraud_checker(self.session_factory)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _find_by_source(self, session: AsyncSession, tenant_id: uuid.UUID,
                              source_event_id: str) -> Optional[CommissionEvent]:
        result = await session.execute(
            select(CommissionEvent).where(
                and_(
                    CommissionEvent.tenant_id == tenant_id,
                    CommissionEvent.source_event_id == source_event_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_event_by_source(self, tenant_id: uuid.UUID, source_event_id: str) -> Optional[CommissionEvent]:
        async with self.session_factory() as session:
            return await self._find_by_source(session, tenant_id, source_event_id)

    async def _load_event(self, session: AsyncSession, event_id: uuid.UUID,
                          tenant_id: Optional[uuid.UUID] = None) -> CommissionEvent:
        query = select(CommissionEvent).where(CommissionEvent.id == event_id)
        if tenant_id is not None:
            query = query.where(CommissionEvent.tenant_id == tenant_id)
        event = (await session.execute(query)).scalar_one_or_none()
        if event is None:
            raise CommissionEventNotFoundError(f"Commission event {event_id} not found")
        return event

    async def get_event(self, event_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> CommissionEvent:
        async with self.session_factory() as session:
            return await self._load_event(session, event_id, tenant_id)

    async def list_events_for_source_object(self, tenant_id: uuid.UUID,
                                            source_object_id: str) -> List[CommissionEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CommissionEvent)
                .where(
                    and_(
                        CommissionEvent.tenant_id == tenant_id,
                        CommissionEvent.source_object_id == source_object_id,
                        CommissionEvent.attribution_model == CommissionEventKind.CONVERSION.value,
                    )
                )
                .order_by(CommissionEvent.occurred_at)
            )
            return list(result.scalars().all())

    # ========================================================================
    # Compute & record
    # ========================================================================

    async def _recurring_cycle(self, session: AsyncSession, tenant_id: uuid.UUID,
                               subscription_id: str) -> int:
        """Next recurring cycle number for a subscription, counted from the ledger."""
        result = await session.execute(
            select(func.count(CommissionEvent.id)).where(
                and_(
                    CommissionEvent.tenant_id == tenant_id,
                    CommissionEvent.subscription_id == subscription_id,
                    CommissionEvent.is_recurring.is_(True),
                    CommissionEvent.attribution_model == CommissionEventKind.CONVERSION.value,
                )
            )
        )
        return (result.scalar() or 0) + 1

    async def _price(
        self,
        session: AsyncSession,
        affiliate: Affiliate,
        plan: Optional[CommissionPlan],
        event_amount_cents: int,
        is_first_payment: bool,
        recurring_cycle: Optional[int],
        ref_code: Optional[str],
        occurred_at: datetime,
    ) -> tuple:
        """Breakdown plus the promotions it consumed."""
        if plan is None:
            logger.warning(f"Affiliate {affiliate.id} has no open plan assignment; recording zero commission")
            return CommissionBreakdown(notes=["no open plan assignment"]), []

        if affiliate.status != AffiliateStatus.ACTIVE.value:
            logger.warning(f"Affiliate {affiliate.id} is {affiliate.status}; recording zero commission")
            return CommissionBreakdown(notes=[f"affiliate is {affiliate.status}"]), []

        tier = await get_tier(session, affiliate.current_tier_id)
        promotions = (await session.execute(
            select(CommissionPromotion).where(
                and_(
                    CommissionPromotion.plan_id == plan.id,
                    CommissionPromotion.is_active.is_(True),
                )
            )
        )).scalars().all()
        eligible = eligible_promotions(promotions, affiliate.id, ref_code, event_amount_cents, occurred_at)

        try:
            breakdown = compute_breakdown(
                plan,
                event_amount_cents,
                is_first_payment,
                recurring_cycle=recurring_cycle,
                tier=tier,
                promotions=eligible,
            )
        except PlanConfigurationError as e:
            logger.warning(f"Plan {plan.id} is misconfigured ({e}); recording zero commission")
            return CommissionBreakdown(notes=[f"plan misconfigured: {p}" for p in e.problems]), []

        return breakdown, [p for p in eligible if p.id in breakdown.promotion_ids]

    async def screen_for_fraud(self, request: FraudCheckRequest) -> Optional[FraudCheckResult]:
        """Run the fraud checker; a failing checker is logged and never blocks the commission."""
        if self.fraud_checker is None:
            return None
        try:
            return await self.fraud_checker(request)
        except Exception as e:
            logger.error(f"Fraud screening failed for source event {request.source_event_id}: {e}", exc_info=True)
            return None

    async def compute_and_record_commission(
        self,
        tenant_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        source_event_id: str,
        event_amount_cents: int,
        is_first_payment: bool,
        occurred_at: datetime,
        recurring_cycle: Optional[int] = None,
        subscription_id: Optional[str] = None,
        source_object_id: Optional[str] = None,
        ref_code: Optional[str] = None,
        touch_id: Optional[uuid.UUID] = None,
        ip_address_hash: Optional[str] = None,
        evaluate_tiers: bool = True,
    ) -> CommissionEvent:
        """
        Record the commission for one payment, exactly once per source event id.

        A replayed source event id returns the stored event unchanged. When
        `evaluate_tiers` is set, the tier upgrade check runs after the event
        has committed; its failures are logged and never affect the event.

        The payment is screened for fraud first. REJECT records a zero event
        that is clawed back on creation; REVIEW marks the event `fraud_hold`
        so hold maturation leaves it PENDING.
        """
        if event_amount_cents < 0:
            raise ValueError(f"event_amount_cents must be >= 0, got {event_amount_cents}")

        occurred_at = as_utc(occurred_at)

        existing = await self.get_event_by_source(tenant_id, source_event_id)
        if existing is not None:
            logger.info(f"Commission for source event {source_event_id} already recorded; returning it")
            if evaluate_tiers and existing.plan_id is not None:
                await self.evaluate_tiers_after_commit(existing.affiliate_id, existing.plan_id)
            return existing

        screening = await self.screen_for_fraud(FraudCheckRequest(
            tenant_id=tenant_id,
            affiliate_id=affiliate_id,
            source_event_id=source_event_id,
            event_amount_cents=event_amount_cents,
            touch_id=touch_id,
            ip_address_hash=ip_address_hash,
        ))
        rejected = screening is not None and screening.recommendation == "REJECT"

        async def _work(session: AsyncSession) -> CommissionEvent:
            already = await self._find_by_source(session, tenant_id, source_event_id)
            if already is not None:
                return already

            affiliate = await get_affiliate(session, affiliate_id, tenant_id)
            assignment = await get_open_assignment(session, affiliate_id)
            plan = await get_plan(session, assignment.plan_id, tenant_id) if assignment else None

            cycle = recurring_cycle
            if not is_first_payment and cycle is None and subscription_id:
                cycle = await self._recurring_cycle(session, tenant_id, subscription_id)

            if rejected:
                breakdown, applied = CommissionBreakdown(notes=["rejected by fraud screening"]), []
            else:
                breakdown, applied = await self._price(
                    session, affiliate, plan, event_amount_cents, is_first_payment, cycle, ref_code, occurred_at,
                )
            for promotion in applied:
                promotion.uses_count = (promotion.uses_count or 0) + 1

            tier = await get_tier(session, affiliate.current_tier_id)
            extra_info = {
                "ref_code": ref_code,
                "rate_source": breakdown.rate_source.value,
                "promotion_ids": [str(i) for i in breakdown.promotion_ids],
                "tier_name": tier.name if tier is not None else None,
            }
            if plan is not None:
                extra_info["plan_name"] = plan.name
                extra_info["plan_version"] = plan.version
            if breakdown.multiplier != 1:
                extra_info["recurring_multiplier"] = str(breakdown.multiplier)
            if breakdown.notes:
                extra_info["notes"] = breakdown.notes
            if screening is not None and (screening.alerts or screening.recommendation != "APPROVE"):
                extra_info["fraud_risk_score"] = screening.risk_score
                extra_info["fraud_alerts"] = screening.alert_types
                if rejected:
                    extra_info["fraud_rejected"] = True
                elif screening.recommendation == "REVIEW" and settings.FRAUD_HOLD_ON_REVIEW:
                    extra_info["fraud_hold"] = True

            hold_days = plan.hold_days if plan is not None else 0
            event = CommissionEvent(
                tenant_id=tenant_id,
                affiliate_id=affiliate_id,
                plan_id=plan.id if plan is not None else None,
                touch_id=touch_id,
                source_event_id=source_event_id,
                source_object_id=source_object_id,
                subscription_id=subscription_id,
                event_amount_cents=event_amount_cents,
                commission_amount_cents=breakdown.commission_amount_cents,
                base_commission_cents=breakdown.base_commission_cents,
                tier_bonus_cents=0,
                promotion_bonus_cents=breakdown.promotion_bonus_cents,
                product_adjustment_cents=0,
                is_recurring=not is_first_payment,
                recurring_cycle=cycle if not is_first_payment else None,
                attribution_model=CommissionEventKind.CONVERSION.value,
                status=CommissionEventStatus.PENDING.value,
                occurred_at=occurred_at,
                hold_until=occurred_at + timedelta(days=hold_days or 0),
                extra_info=extra_info,
            )
            session.add(event)

            if rejected:
                reason = f"Fraud detected: {', '.join(screening.alert_types) or 'rejected by checker'}"
                lifecycle.transition_event(event, lifecycle.CLAWED_BACK, reason=reason)
                if settings.FRAUD_AUTO_PAUSE_ON_REJECT and affiliate.status == AffiliateStatus.ACTIVE.value:
                    affiliate.status = AffiliateStatus.PAUSED.value
                    logger.warning(f"Paused affiliate {affiliate_id} after a fraud rejection")
            else:
                affiliate.lifetime_conversions = affiliate.lifetime_conversions + 1
                affiliate.lifetime_revenue_cents = affiliate.lifetime_revenue_cents + event_amount_cents

            await session.flush()
            return event

        try:
            event = await run_serializable(
                _work, self.serializable_factory, description=f"commission for source event {source_event_id}"
            )
        except IntegrityError:
            event = await self.get_event_by_source(tenant_id, source_event_id)
            if event is None:
                raise
            logger.info(f"Concurrent delivery of source event {source_event_id} resolved to event {event.id}")
        else:
            logger.info(
                f"Recorded commission {event.commission_amount_cents}c for affiliate {affiliate_id} "
                f"(source event {source_event_id}, {event.status})"
            )

        if evaluate_tiers and event.plan_id is not None and event.status != lifecycle.CLAWED_BACK:
            await self.evaluate_tiers_after_commit(event.affiliate_id, event.plan_id)
        return event

    async def evaluate_tiers_after_commit(self, affiliate_id: uuid.UUID,
                                          plan_id: uuid.UUID) -> Optional[TierUpgradeResult]:
        """Tier check that never propagates: the commission event is already committed."""
        try:
            return await self.tier_service.check_and_process_tier_upgrade(affiliate_id, plan_id)
        except Exception as e:
            logger.error(f"Tier evaluation failed for affiliate {affiliate_id} on plan {plan_id}: {e}", exc_info=True)
            return None

    # ========================================================================
    # Clawback & reversal
    # ========================================================================

    async def _require_clawback_enabled(self, session: AsyncSession, event: CommissionEvent) -> None:
        if event.plan_id is None:
            raise ClawbackNotPermittedError(
                f"Commission event {event.id} has no originating plan; nothing to claw back"
            )
        plan = await get_plan(session, event.plan_id)
        if not plan.clawback_enabled:
            raise ClawbackNotPermittedError(f"Plan {plan.name} does not allow clawbacks")

    async def clawback_commission(self, event_id: uuid.UUID, reason: str,
                                  tenant_id: Optional[uuid.UUID] = None) -> CommissionEvent:
        """
        Void a PENDING or APPROVED event and take back its lifetime counters.

        Clawing back an already CLAWED_BACK event returns it untouched. PAID
        events are rejected; they are offset with reverse_paid_commission.
        """

        async def _work(session: AsyncSession) -> tuple:
            event = await self._load_event(session, event_id, tenant_id)
            if event.status == lifecycle.CLAWED_BACK:
                return event, False
            if event.status == lifecycle.PAID:
                raise ClawbackNotPermittedError(
                    f"Commission event {event.id} is PAID; issue a reversing entry instead"
                )
            if event.attribution_model == CommissionEventKind.REVERSAL.value:
                raise ClawbackNotPermittedError(f"Commission event {event.id} is a reversing entry")

            await self._require_clawback_enabled(session, event)
            lifecycle.transition_event(event, lifecycle.CLAWED_BACK, reason=reason)

            if event.is_conversion:
                affiliate = await get_affiliate(session, event.affiliate_id)
                _decrement_counters(affiliate, event)
            await session.flush()
            return event, True

        event, changed = await run_serializable(
            _work, self.serializable_factory, description=f"clawback of commission event {event_id}"
        )
        if changed:
            logger.info(f"Clawed back commission event {event_id}: {reason}")
        else:
            logger.info(f"Commission event {event_id} was already clawed back")
        return event

    async def reverse_paid_commission(self, event_id: uuid.UUID, reason: str,
                                      tenant_id: Optional[uuid.UUID] = None) -> CommissionEvent:
        """
        Offset a PAID event with a negative APPROVED entry.

        The PAID row is left as is. The reversal is keyed by the original
        event id, so repeating the call returns the same reversal.
        """

        async def _work(session: AsyncSession) -> tuple:
            event = await self._load_event(session, event_id, tenant_id)
            if event.status != lifecycle.PAID:
                raise ClawbackNotPermittedError(
                    f"Commission event {event.id} is {event.status}; only PAID events are reversed"
                )
            key = reversal_key(event.id)
            existing = await self._find_by_source(session, event.tenant_id, key)
            if existing is not None:
                return existing, False

            await self._require_clawback_enabled(session, event)

            now = utcnow()
            reversal = CommissionEvent(
                tenant_id=event.tenant_id,
                affiliate_id=event.affiliate_id,
                plan_id=event.plan_id,
                tier_id=event.tier_id,
                reversal_of_id=event.id,
                source_event_id=key,
                source_object_id=event.source_object_id,
                subscription_id=event.subscription_id,
                event_amount_cents=-event.event_amount_cents,
                commission_amount_cents=-event.commission_amount_cents,
                base_commission_cents=-event.base_commission_cents,
                tier_bonus_cents=-event.tier_bonus_cents,
                promotion_bonus_cents=-event.promotion_bonus_cents,
                product_adjustment_cents=-event.product_adjustment_cents,
                is_recurring=event.is_recurring,
                recurring_cycle=event.recurring_cycle,
                attribution_model=CommissionEventKind.REVERSAL.value,
                status=CommissionEventStatus.APPROVED.value,
                occurred_at=now,
                approved_at=now,
                clawback_reason=reason,
                extra_info={"reversal_of": str(event.id), "payout_reference": event.payout_reference},
            )
            session.add(reversal)

            if event.is_conversion:
                affiliate = await get_affiliate(session, event.affiliate_id)
                _decrement_counters(affiliate, event)
            await session.flush()
            return reversal, True

        description = f"reversal of paid commission event {event_id}"
        try:
            reversal, created = await run_serializable(_work, self.serializable_factory, description=description)
        except IntegrityError:
            original = await self.get_event(event_id, tenant_id)
            reversal = await self.get_event_by_source(original.tenant_id, reversal_key(event_id))
            if reversal is None:
                raise
            created = False

        if created:
            logger.info(f"Reversed paid commission event {event_id} with {reversal.id}: {reason}")
        return reversal

    async def clawback_by_source_object(self, tenant_id: uuid.UUID, source_object_id: str,
                                        reason: str) -> List[RefundOutcome]:
        """Apply a refund of a payment object to every conversion event it produced."""
        outcomes = []
        for event in await self.list_events_for_source_object(tenant_id, source_object_id):
            try:
                if event.status == lifecycle.CLAWED_BACK:
                    outcomes.append(RefundOutcome(event_id=event.id, action="ALREADY_CLAWED_BACK"))
                elif event.status == lifecycle.PAID:
                    reversal = await self.reverse_paid_commission(event.id, reason, tenant_id)
                    outcomes.append(RefundOutcome(
                        event_id=event.id, action="REVERSED", reversal_event_id=reversal.id,
                    ))
                else:
                    await self.clawback_commission(event.id, reason, tenant_id)
                    outcomes.append(RefundOutcome(event_id=event.id, action="CLAWED_BACK"))
            except ClawbackNotPermittedError as e:
                logger.info(f"Refund of {source_object_id} left event {event.id} as is: {e}")
                outcomes.append(RefundOutcome(event_id=event.id, action="SKIPPED", detail=str(e)))

        if not outcomes:
            logger.info(f"Refund of {source_object_id} matched no commission events")
        return outcomes

    # ========================================================================
    # Hold maturation & payout
    # ========================================================================

    async def approve_matured_commissions(
        self,
        now: Optional[datetime] = None,
        tenant_id: Optional[uuid.UUID] = None,
        dispute_checker: Optional[DisputeChecker] = None,
        limit: Optional[int] = None,
    ) -> ApprovalRunResult:
        """
        Approve PENDING events whose hold period has elapsed.

        The dispute checker is consulted outside any transaction; disputed
        events stay PENDING for the refund path to claw back. Events on a
        fraud hold also stay PENDING until an operator clears or claws them.
        """
        now = as_utc(now or utcnow())
        limit = limit or settings.APPROVAL_BATCH_SIZE

        async with self.session_factory() as session:
            query = (
                select(CommissionEvent)
                .where(
                    and_(
                        CommissionEvent.status == lifecycle.PENDING,
                        CommissionEvent.hold_until <= now,
                    )
                )
                .order_by(CommissionEvent.hold_until)
                .limit(limit)
            )
            if tenant_id is not None:
                query = query.where(CommissionEvent.tenant_id == tenant_id)
            candidates = list((await session.execute(query)).scalars().all())

        result = ApprovalRunResult(examined=len(candidates))
        for candidate in candidates:
            if (candidate.extra_info or {}).get("fraud_hold"):
                result.held += 1
                continue
            if dispute_checker is not None and await dispute_checker(candidate):
                result.disputed += 1
                logger.info(f"Commission event {candidate.id} is disputed upstream; leaving it PENDING")
                continue

            async def _work(session: AsyncSession, event_id: uuid.UUID = candidate.id) -> bool:
                event = await self._load_event(session, event_id)
                if event.status != lifecycle.PENDING:
                    return False
                lifecycle.transition_event(event, lifecycle.APPROVED, at=now)
                await session.flush()
                return True

            approved = await run_serializable(
                _work, self.serializable_factory, description=f"approval of commission event {candidate.id}"
            )
            if approved:
                result.approved += 1
            else:
                result.skipped += 1

        logger.info(
            f"Hold maturation: {result.examined} examined, {result.approved} approved, "
            f"{result.disputed} disputed, {result.held} held, {result.skipped} skipped"
        )
        return result

    async def mark_commissions_paid(self, tenant_id: uuid.UUID, event_ids: List[uuid.UUID],
                                    payout_reference: str,
                                    paid_at: Optional[datetime] = None) -> List[CommissionEvent]:
        """APPROVED -> PAID for a payout run. All or nothing."""
        paid_at = as_utc(paid_at or utcnow())

        async def _work(session: AsyncSession) -> List[CommissionEvent]:
            events = []
            for event_id in event_ids:
                event = await self._load_event(session, event_id, tenant_id)
                lifecycle.transition_event(event, lifecycle.PAID, at=paid_at, payout_reference=payout_reference)
                events.append(event)
            await session.flush()
            return events

        events = await run_serializable(
            _work, self.serializable_factory, description=f"payout {payout_reference}"
        )
        logger.info(f"Marked {len(events)} commission events PAID under payout {payout_reference}")
        return events
