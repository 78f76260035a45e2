"""
Commission plan and tier catalog access.

Plans and tiers are authored by tenant administrators; the engine reads
them. The one write owned here is plan reassignment, which closes the
affiliate's open PlanAssignment and opens the next inside a single
serializable unit of work.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Sequence

from sqlalchemy import select, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.datetime_utils import utcnow
from app.core.exceptions import AffiliateNotFoundError, PlanNotFoundError, PlanAssignmentError
from app.core.transactions import run_serializable
from app.database import async_session_factory, serializable_session_factory
from app.models.affiliate import Affiliate
from app.models.commission import CommissionPlan, CommissionTier, PlanAssignment
from app.services.commission_rates import plan_configuration_problems

logger = logging.getLogger(__name__)


# ==================== Session-level lookups ====================
# Used by the engine and tier service inside their own units of work.

async def get_affiliate(session: AsyncSession, affiliate_id: uuid.UUID,
                        tenant_id: Optional[uuid.UUID] = None) -> Affiliate:
    query = select(Affiliate).where(Affiliate.id == affiliate_id)
    if tenant_id is not None:
        query = query.where(Affiliate.tenant_id == tenant_id)
    affiliate = (await session.execute(query)).scalar_one_or_none()
    if affiliate is None:
        raise AffiliateNotFoundError(f"Affiliate {affiliate_id} not found")
    return affiliate


async def get_plan(session: AsyncSession, plan_id: uuid.UUID,
                   tenant_id: Optional[uuid.UUID] = None) -> CommissionPlan:
    query = select(CommissionPlan).where(CommissionPlan.id == plan_id)
    if tenant_id is not None:
        query = query.where(CommissionPlan.tenant_id == tenant_id)
    plan = (await session.execute(query)).scalar_one_or_none()
    if plan is None:
        raise PlanNotFoundError(f"Commission plan {plan_id} not found")
    return plan


async def get_open_assignment(session: AsyncSession, affiliate_id: uuid.UUID) -> Optional[PlanAssignment]:
    result = await session.execute(
        select(PlanAssignment).where(
            and_(
                PlanAssignment.affiliate_id == affiliate_id,
                PlanAssignment.effective_to.is_(None),
            )
        )
    )
    return result.scalar_one_or_none()


async def list_tiers(session: AsyncSession, plan_id: uuid.UUID, descending: bool = False) -> List[CommissionTier]:
    order = CommissionTier.level.desc() if descending else CommissionTier.level.asc()
    result = await session.execute(
        select(CommissionTier).where(CommissionTier.plan_id == plan_id).order_by(order)
    )
    return list(result.scalars().all())


async def get_tier(session: AsyncSession, tier_id: Optional[uuid.UUID]) -> Optional[CommissionTier]:
    if tier_id is None:
        return None
    return await session.get(CommissionTier, tier_id)


def qualifying_tier(tiers: Sequence[CommissionTier], lifetime_conversions: int,
                    lifetime_revenue_cents: int) -> Optional[CommissionTier]:
    """Highest-level tier whose conversion AND revenue thresholds are both met."""
    for tier in sorted(tiers, key=lambda t: t.level, reverse=True):
        if tier.qualifies(lifetime_conversions, lifetime_revenue_cents):
            return tier
    return None


def tier_catalog_problems(tiers: Sequence[CommissionTier]) -> List[str]:
    """
    Check that qualification is monotonic: every higher level demands at
    least the conversions and revenue of every lower level.
    """
    problems = []
    ordered = sorted(tiers, key=lambda t: t.level)
    levels = [t.level for t in ordered]
    if len(levels) != len(set(levels)):
        problems.append("Duplicate tier levels")
    for lower, higher in zip(ordered, ordered[1:]):
        if higher.min_conversions < lower.min_conversions:
            problems.append(
                f"Tier {higher.name} (level {higher.level}) needs fewer conversions "
                f"than {lower.name} (level {lower.level})"
            )
        if higher.min_revenue_cents < lower.min_revenue_cents:
            problems.append(
                f"Tier {higher.name} (level {higher.level}) needs less revenue "
                f"than {lower.name} (level {lower.level})"
            )
    return problems


class PlanRegistry:
    """Read access to plans and tiers, plus atomic plan reassignment."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        serializable_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.serializable_factory = serializable_factory or serializable_session_factory

    async def get_plan(self, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> CommissionPlan:
        async with self.session_factory() as session:
            return await get_plan(session, plan_id, tenant_id)

    async def get_current_assignment(self, affiliate_id: uuid.UUID) -> Optional[PlanAssignment]:
        async with self.session_factory() as session:
            return await get_open_assignment(session, affiliate_id)

    async def get_effective_plan(self, tenant_id: uuid.UUID, affiliate_id: uuid.UUID,
                                 at: Optional[datetime] = None) -> Optional[CommissionPlan]:
        """Plan the affiliate was assigned at a point in time (now by default)."""
        at = at or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(CommissionPlan)
                .join(PlanAssignment, PlanAssignment.plan_id == CommissionPlan.id)
                .where(
                    and_(
                        PlanAssignment.tenant_id == tenant_id,
                        PlanAssignment.affiliate_id == affiliate_id,
                        PlanAssignment.effective_from <= at,
                        or_(PlanAssignment.effective_to.is_(None), PlanAssignment.effective_to > at),
                    )
                )
                .order_by(PlanAssignment.effective_from.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_tiers(self, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> List[CommissionTier]:
        async with self.session_factory() as session:
            await get_plan(session, plan_id, tenant_id)
            return await list_tiers(session, plan_id)

    async def validate_plan(self, tenant_id: uuid.UUID, plan_id: uuid.UUID) -> List[str]:
        """Configuration problems for the plan and its tier catalog; empty when usable."""
        async with self.session_factory() as session:
            plan = await get_plan(session, plan_id, tenant_id)
            tiers = await list_tiers(session, plan_id)
        return plan_configuration_problems(plan) + tier_catalog_problems(tiers)

    async def reassign_plan(
        self,
        tenant_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        plan_id: uuid.UUID,
        effective_from: Optional[datetime] = None,
    ) -> PlanAssignment:
        """
        Close the affiliate's open assignment and open one for `plan_id`.

        Reassigning to the plan that is already open is a no-op. Both writes
        commit together, so there is never a moment with zero or two open
        assignments.
        """
        effective_from = effective_from or utcnow()

        async def _work(session: AsyncSession) -> PlanAssignment:
            await get_affiliate(session, affiliate_id, tenant_id)
            await get_plan(session, plan_id, tenant_id)

            current = await get_open_assignment(session, affiliate_id)
            if current is not None and current.plan_id == plan_id:
                return current

            if current is not None:
                current.effective_to = effective_from
                # Closing must reach the store before the new open row is inserted
                await session.flush()

            assignment = PlanAssignment(
                tenant_id=tenant_id,
                affiliate_id=affiliate_id,
                plan_id=plan_id,
                effective_from=effective_from,
            )
            session.add(assignment)
            await session.flush()
            return assignment

        try:
            assignment = await run_serializable(
                _work, self.serializable_factory, description=f"plan reassignment for affiliate {affiliate_id}"
            )
        except IntegrityError as e:
            logger.error(f"Plan reassignment for affiliate {affiliate_id} violated the open-assignment rule: {e.orig}")
            raise PlanAssignmentError(
                f"Affiliate {affiliate_id} already has an open plan assignment; retry the reassignment"
            ) from e

        logger.info(f"Affiliate {affiliate_id} assigned to plan {plan_id} from {effective_from.isoformat()}")
        return assignment
