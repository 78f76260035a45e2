"""
Tier evaluation, upgrade and maintenance recomputation.

The per-conversion check only ever upgrades. Reading the affiliate's
recorded tier, deciding, writing the new tier and inserting the bonus
event all happen in one serializable unit of work, and the bonus event is
keyed by (affiliate, tier) so it can exist at most once.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.datetime_utils import utcnow
from app.core.exceptions import TransientDatabaseError
from app.core.transactions import run_serializable
from app.database import async_session_factory, serializable_session_factory
from app.models.affiliate import Affiliate, AffiliateStatus
from app.models.commission import (
    CommissionEvent, CommissionEventKind, CommissionEventStatus, CommissionTier, PlanAssignment,
)
from app.schemas.commission import (
    TierProgress, TierRecalculationSummary, TierSummary, TierUpgradeResult,
)
from app.services.plan_registry import (
    get_affiliate, get_plan, get_tier, list_tiers, qualifying_tier,
)

logger = logging.getLogger(__name__)


def tier_bonus_key(affiliate_id: uuid.UUID, tier_id: uuid.UUID) -> str:
    """Idempotency key of the one-time bonus for reaching a tier."""
    return f"tier-bonus:{affiliate_id}:{tier_id}"


def summarize(tier: Optional[CommissionTier]) -> Optional[TierSummary]:
    return TierSummary.model_validate(tier) if tier is not None else None


def _tier_on_plan(tier: Optional[CommissionTier], plan_id: uuid.UUID) -> Optional[CommissionTier]:
    # A tier recorded under a previous plan does not count toward this plan's ladder
    if tier is not None and tier.plan_id == plan_id:
        return tier
    return None


class TierService:
    """Tier upgrades with one-time bonuses, plus drift correction."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        serializable_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.serializable_factory = serializable_factory or serializable_session_factory

    # ========================================================================
    # Per-conversion upgrade
    # ========================================================================

    async def check_and_process_tier_upgrade(self, affiliate_id: uuid.UUID,
                                             plan_id: uuid.UUID) -> TierUpgradeResult:
        """
        Upgrade the affiliate to the highest tier its lifetime stats qualify for.

        Only strictly higher levels count as an upgrade, and only ACTIVE
        affiliates are upgraded. On upgrade a tier with bonus_cents > 0 yields
        one APPROVED tier-bonus event, unless a bonus for that tier was
        already issued.
        """

        async def _work(session: AsyncSession) -> TierUpgradeResult:
            affiliate = await get_affiliate(session, affiliate_id)
            plan = await get_plan(session, plan_id, affiliate.tenant_id)
            tiers = await list_tiers(session, plan_id, descending=True)

            current = _tier_on_plan(await get_tier(session, affiliate.current_tier_id), plan_id)
            if affiliate.status != AffiliateStatus.ACTIVE.value:
                logger.info(f"Affiliate {affiliate_id} is {affiliate.status}; skipping tier upgrade")
                return TierUpgradeResult(
                    upgraded=False,
                    previous_tier=summarize(current),
                    new_tier=summarize(current),
                )

            qualifying = qualifying_tier(tiers, affiliate.lifetime_conversions, affiliate.lifetime_revenue_cents)

            if qualifying is None or (current is not None and qualifying.level <= current.level):
                return TierUpgradeResult(
                    upgraded=False,
                    previous_tier=summarize(current),
                    new_tier=summarize(current),
                )

            now = utcnow()
            affiliate.current_tier_id = qualifying.id
            affiliate.tier_qualified_at = now

            bonus_event_id = None
            if qualifying.bonus_cents > 0:
                key = tier_bonus_key(affiliate.id, qualifying.id)
                existing = (await session.execute(
                    select(CommissionEvent).where(
                        and_(
                            CommissionEvent.tenant_id == affiliate.tenant_id,
                            CommissionEvent.source_event_id == key,
                        )
                    )
                )).scalar_one_or_none()

                if existing is None:
                    bonus = CommissionEvent(
                        tenant_id=affiliate.tenant_id,
                        affiliate_id=affiliate.id,
                        plan_id=plan.id,
                        tier_id=qualifying.id,
                        source_event_id=key,
                        event_amount_cents=0,
                        commission_amount_cents=qualifying.bonus_cents,
                        base_commission_cents=0,
                        tier_bonus_cents=qualifying.bonus_cents,
                        promotion_bonus_cents=0,
                        product_adjustment_cents=0,
                        is_recurring=False,
                        attribution_model=CommissionEventKind.TIER_BONUS.value,
                        status=CommissionEventStatus.APPROVED.value,
                        occurred_at=now,
                        approved_at=now,
                        extra_info={
                            "plan_name": plan.name,
                            "plan_version": plan.version,
                            "tier_name": qualifying.name,
                            "tier_level": qualifying.level,
                        },
                    )
                    session.add(bonus)
                    await session.flush()
                    bonus_event_id = bonus.id
                else:
                    logger.info(f"Tier bonus {key} already issued; upgrading without a new bonus")

            return TierUpgradeResult(
                upgraded=True,
                previous_tier=summarize(current),
                new_tier=summarize(qualifying),
                bonus_awarded=bonus_event_id is not None,
                bonus_event_id=bonus_event_id,
            )

        description = f"tier upgrade check for affiliate {affiliate_id}"
        try:
            result = await run_serializable(_work, self.serializable_factory, description=description)
        except IntegrityError:
            # A concurrent evaluation committed the bonus first; re-evaluate against its result
            logger.info(f"{description} lost a bonus insert race; re-evaluating")
            result = await run_serializable(_work, self.serializable_factory, description=description)

        if result.upgraded:
            logger.info(
                f"Affiliate {affiliate_id} upgraded "
                f"{result.previous_tier.name if result.previous_tier else 'none'} -> {result.new_tier.name}"
                f"{' with bonus' if result.bonus_awarded else ''}"
            )
        return result

    # ========================================================================
    # Maintenance recomputation
    # ========================================================================

    async def _recalculate_one(self, affiliate_id: uuid.UUID, plan_id: uuid.UUID) -> str:
        async def _work(session: AsyncSession) -> str:
            affiliate = await get_affiliate(session, affiliate_id)
            tiers = await list_tiers(session, plan_id, descending=True)
            recorded = await get_tier(session, affiliate.current_tier_id)
            current = _tier_on_plan(recorded, plan_id)
            qualifying = qualifying_tier(tiers, affiliate.lifetime_conversions, affiliate.lifetime_revenue_cents)

            qualifying_id = qualifying.id if qualifying is not None else None
            if affiliate.current_tier_id == qualifying_id:
                return "unchanged"

            affiliate.current_tier_id = qualifying_id
            affiliate.tier_qualified_at = utcnow() if qualifying is not None else None

            old_level = current.level if current is not None else None
            new_level = qualifying.level if qualifying is not None else None
            if new_level is not None and (old_level is None or new_level > old_level):
                return "upgraded"
            return "downgraded"

        return await run_serializable(
            _work, self.serializable_factory, description=f"tier recalculation for affiliate {affiliate_id}"
        )

    async def recalculate_all_tiers(self, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> TierRecalculationSummary:
        """
        Re-derive the tier of every active affiliate currently on the plan.

        Corrects drift in both directions and never issues bonuses. Each
        affiliate is its own unit of work, so one failure does not undo the rest.
        """
        async with self.session_factory() as session:
            await get_plan(session, plan_id, tenant_id)
            result = await session.execute(
                select(Affiliate.id)
                .join(PlanAssignment, PlanAssignment.affiliate_id == Affiliate.id)
                .where(
                    and_(
                        Affiliate.tenant_id == tenant_id,
                        Affiliate.status == AffiliateStatus.ACTIVE.value,
                        PlanAssignment.plan_id == plan_id,
                        PlanAssignment.effective_to.is_(None),
                    )
                )
                .order_by(Affiliate.created_at)
            )
            affiliate_ids = list(result.scalars().all())

        summary = TierRecalculationSummary(tenant_id=tenant_id, plan_id=plan_id)
        for affiliate_id in affiliate_ids:
            summary.evaluated += 1
            try:
                outcome = await self._recalculate_one(affiliate_id, plan_id)
            except TransientDatabaseError as e:
                summary.failed += 1
                logger.error(f"Tier recalculation skipped affiliate {affiliate_id}: {e}")
                continue

            if outcome == "upgraded":
                summary.upgraded += 1
            elif outcome == "downgraded":
                summary.downgraded += 1
            else:
                summary.unchanged += 1

        logger.info(
            f"Tier recalculation for plan {plan_id}: {summary.evaluated} evaluated, "
            f"{summary.upgraded} up, {summary.downgraded} down, {summary.failed} failed"
        )
        return summary

    # ========================================================================
    # Progress
    # ========================================================================

    async def get_tier_progress(self, affiliate_id: uuid.UUID, plan_id: uuid.UUID) -> TierProgress:
        """Progress from the recorded tier towards the next level on the plan."""
        async with self.session_factory() as session:
            affiliate = await get_affiliate(session, affiliate_id)
            await get_plan(session, plan_id, affiliate.tenant_id)
            tiers = await list_tiers(session, plan_id)
            current = _tier_on_plan(await get_tier(session, affiliate.current_tier_id), plan_id)

        current_level = current.level if current is not None else None
        next_tier = next(
            (t for t in tiers if current_level is None or t.level > current_level),
            None,
        )

        progress = TierProgress(
            affiliate_id=affiliate.id,
            plan_id=plan_id,
            lifetime_conversions=affiliate.lifetime_conversions,
            lifetime_revenue_cents=affiliate.lifetime_revenue_cents,
            current_tier=summarize(current),
            next_tier=summarize(next_tier),
            perks=[str(p) for p in (current.perks or [])] if current is not None else [],
        )
        if next_tier is None:
            progress.progress_percentage = 100
            return progress

        progress.conversions_needed = max(0, next_tier.min_conversions - affiliate.lifetime_conversions)
        progress.revenue_needed_cents = max(0, next_tier.min_revenue_cents - affiliate.lifetime_revenue_cents)

        conversions_pct = (
            min(100.0, affiliate.lifetime_conversions / next_tier.min_conversions * 100)
            if next_tier.min_conversions > 0 else 100.0
        )
        revenue_pct = (
            min(100.0, affiliate.lifetime_revenue_cents / next_tier.min_revenue_cents * 100)
            if next_tier.min_revenue_cents > 0 else 100.0
        )
        progress.progress_percentage = round(min(conversions_pct, revenue_pct), 2)
        return progress
