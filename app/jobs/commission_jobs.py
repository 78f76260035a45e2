"""
Commission Maintenance Jobs

Externally scheduled (cron, platform scheduler) entry points:
- Hold maturation: PENDING -> APPROVED once hold_until has passed
- Tier recalculation: correct tier drift for every plan with tiers

Usage:
    python -m app.jobs.commission_jobs approve
    python -m app.jobs.commission_jobs recalculate-tiers [--tenant-id UUID]
"""

import argparse
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select

from app.config import settings
from app.core.exceptions import CommissionEngineError
from app.database import get_db_session
from app.models.commission import CommissionTier, PlanAssignment
from app.services.commission_engine import CommissionEngine, DisputeChecker
from app.services.tier_service import TierService

logger = logging.getLogger(__name__)


async def approve_matured_commissions_job(
    engine: Optional[CommissionEngine] = None,
    dispute_checker: Optional[DisputeChecker] = None,
) -> Dict[str, Any]:
    """Approve every commission whose hold period has elapsed, one batch per call."""
    logger.info("Starting commission hold maturation...")
    start_time = datetime.now(timezone.utc)
    engine = engine or CommissionEngine()

    result = await engine.approve_matured_commissions(
        now=start_time, dispute_checker=dispute_checker, limit=settings.APPROVAL_BATCH_SIZE,
    )

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"Commission hold maturation completed: approved {result.approved} in {elapsed:.2f}s")
    return {"elapsed_seconds": elapsed, **result.model_dump()}


async def recalculate_tiers_job(
    tenant_id: Optional[uuid.UUID] = None,
    tier_service: Optional[TierService] = None,
) -> Dict[str, Any]:
    """
    Recalculate tiers for every (tenant, plan) that has tiers and assigned affiliates.

    A failing plan is logged and counted; the remaining plans still run.
    """
    logger.info("Starting tier recalculation...")
    start_time = datetime.now(timezone.utc)
    tier_service = tier_service or TierService()

    async with get_db_session(tier_service.session_factory) as session:
        query = (
            select(PlanAssignment.tenant_id, PlanAssignment.plan_id)
            .join(CommissionTier, CommissionTier.plan_id == PlanAssignment.plan_id)
            .where(PlanAssignment.effective_to.is_(None))
            .distinct()
        )
        if tenant_id is not None:
            query = query.where(PlanAssignment.tenant_id == tenant_id)
        targets = (await session.execute(query)).all()

    plans_processed = 0
    plans_failed = 0
    totals = {"evaluated": 0, "upgraded": 0, "downgraded": 0, "unchanged": 0, "failed": 0}

    for target_tenant_id, plan_id in targets:
        try:
            summary = await tier_service.recalculate_all_tiers(target_tenant_id, plan_id)
        except CommissionEngineError as e:
            plans_failed += 1
            logger.error(f"Tier recalculation failed for plan {plan_id}: {e}")
            continue

        plans_processed += 1
        for key in totals:
            totals[key] += getattr(summary, key)

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Tier recalculation completed: {plans_processed} plans, "
        f"{totals['upgraded']} up, {totals['downgraded']} down in {elapsed:.2f}s"
    )
    return {
        "plans_processed": plans_processed,
        "plans_failed": plans_failed,
        "elapsed_seconds": elapsed,
        **totals,
    }


JOBS = {
    "approve": approve_matured_commissions_job,
    "recalculate-tiers": recalculate_tiers_job,
}


def main(argv=None) -> Dict[str, Any]:
    parser = argparse.ArgumentParser(description="Run an affiliate commission maintenance job")
    parser.add_argument("job", choices=sorted(JOBS))
    parser.add_argument("--tenant-id", type=uuid.UUID, default=None, help="Limit tier recalculation to one tenant")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.job == "recalculate-tiers":
        return asyncio.run(recalculate_tiers_job(tenant_id=args.tenant_id))
    return asyncio.run(approve_matured_commissions_job())


if __name__ == "__main__":
    main()
