"""Maintenance job entry points."""
from datetime import datetime, timedelta, timezone

import pytest

from app.jobs import commission_jobs
from app.jobs.commission_jobs import approve_matured_commissions_job, recalculate_tiers_job
from app.models.affiliate import Affiliate
from app.models.commission import CommissionEvent


async def test_approve_job_matures_elapsed_holds(commission_engine, seed, tenant_id, load):
    affiliate = await seed.affiliate()
    await seed.assign(affiliate, await seed.plan(hold_days=7))
    now = datetime.now(timezone.utc)

    old = await commission_engine.compute_and_record_commission(
        tenant_id=tenant_id, affiliate_id=affiliate.id, source_event_id="pi_old",
        event_amount_cents=10000, is_first_payment=True, occurred_at=now - timedelta(days=30),
    )
    fresh = await commission_engine.compute_and_record_commission(
        tenant_id=tenant_id, affiliate_id=affiliate.id, source_event_id="pi_fresh",
        event_amount_cents=10000, is_first_payment=True, occurred_at=now - timedelta(days=1),
    )

    result = await approve_matured_commissions_job(engine=commission_engine)

    assert result["examined"] == 1
    assert result["approved"] == 1
    assert "elapsed_seconds" in result
    assert (await load(CommissionEvent, old.id)).status == "APPROVED"
    assert (await load(CommissionEvent, fresh.id)).status == "PENDING"


async def test_recalculate_job_covers_tiered_plans(tier_service, seed, tenant_id, load):
    tiered = await seed.plan(tier_enabled=True)
    silver = await seed.tier(tiered, "Silver", level=1, min_conversions=3)
    untiered = await seed.plan(name="Flat")

    climber = await seed.affiliate("Climber", conversions=4, revenue_cents=40000)
    other = await seed.affiliate("Other", conversions=40, revenue_cents=400000)
    await seed.assign(climber, tiered)
    await seed.assign(other, untiered)

    result = await recalculate_tiers_job(tenant_id=tenant_id, tier_service=tier_service)

    assert result["plans_processed"] == 1
    assert result["plans_failed"] == 0
    assert result["evaluated"] == 1
    assert result["upgraded"] == 1
    assert (await load(Affiliate, climber.id)).current_tier_id == silver.id
    assert (await load(Affiliate, other.id)).current_tier_id is None


def test_cli_rejects_unknown_job():
    with pytest.raises(SystemExit):
        commission_jobs.main(["rebuild-everything"])
