"""Commission recording, idempotency, clawback and hold maturation."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, func

from app.core.exceptions import (
    AffiliateNotFoundError, ClawbackNotPermittedError, InvalidStatusTransitionError,
)
from app.config import settings
from app.models.affiliate import Affiliate
from app.models.commission import CommissionEvent
from app.schemas.commission import FraudAlert, FraudCheckResult, VisitorContext
from app.services.commission_engine import CommissionEngine


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


async def count_events(session_factory, tenant_id, **filters):
    async with session_factory() as session:
        query = select(func.count(CommissionEvent.id)).where(CommissionEvent.tenant_id == tenant_id)
        for column, value in filters.items():
            query = query.where(getattr(CommissionEvent, column) == value)
        return (await session.execute(query)).scalar()


@pytest.fixture
async def enrolled(seed):
    """An active affiliate on a 10% plan with a 7-day hold."""
    affiliate = await seed.affiliate()
    plan = await seed.plan()
    await seed.assign(affiliate, plan)
    return affiliate, plan


class TestComputeAndRecord:
    async def test_records_pending_event_with_hold(self, commission_engine, enrolled, tenant_id, load):
        affiliate, plan = enrolled
        event = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "evt_1", 10000, True, NOW, ref_code="DRRIVERA",
        )

        assert event.status == "PENDING"
        assert event.commission_amount_cents == 1000
        assert event.base_commission_cents == 1000
        assert event.plan_id == plan.id
        assert event.hold_until.replace(tzinfo=timezone.utc) == NOW + timedelta(days=7)
        assert event.extra_info["plan_name"] == "Standard"
        assert event.extra_info["ref_code"] == "DRRIVERA"

        refreshed = await load(Affiliate, affiliate.id)
        assert refreshed.lifetime_conversions == 1
        assert refreshed.lifetime_revenue_cents == 10000

    async def test_replay_is_a_no_op(self, commission_engine, enrolled, tenant_id, session_factory, load):
        affiliate, _ = enrolled
        first = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "evt_dup", 10000, True, NOW,
        )
        second = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "evt_dup", 10000, True, NOW,
        )

        assert second.id == first.id
        assert second.commission_amount_cents == first.commission_amount_cents
        assert await count_events(session_factory, tenant_id) == 1
        assert (await load(Affiliate, affiliate.id)).lifetime_conversions == 1

    async def test_concurrent_duplicates_store_one_event(self, commission_engine, enrolled, tenant_id,
                                                         session_factory, load):
        affiliate, _ = enrolled
        events = await asyncio.gather(*[
            commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_race", 10000, True, NOW)
            for _ in range(10)
        ])

        assert len({e.id for e in events}) == 1
        assert await count_events(session_factory, tenant_id) == 1
        assert (await load(Affiliate, affiliate.id)).lifetime_revenue_cents == 10000

    async def test_same_source_id_in_another_tenant_is_separate(self, commission_engine, seed, enrolled, tenant_id):
        affiliate, _ = enrolled
        other_tenant = uuid.uuid4()
        other = await seed.affiliate(tenant_id=other_tenant)

        mine = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_x", 100, True, NOW)
        theirs = await commission_engine.compute_and_record_commission(other_tenant, other.id, "evt_x", 100, True, NOW)
        assert mine.id != theirs.id

    async def test_no_plan_records_zero(self, commission_engine, seed, tenant_id, load):
        affiliate = await seed.affiliate()
        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_np", 10000, True, NOW)

        assert event.commission_amount_cents == 0
        assert event.plan_id is None
        assert "no open plan assignment" in event.extra_info["notes"]
        assert (await load(Affiliate, affiliate.id)).lifetime_conversions == 1

    async def test_malformed_plan_records_zero(self, commission_engine, seed, tenant_id):
        affiliate = await seed.affiliate()
        plan = await seed.plan(flat_amount_cents=500)
        await seed.assign(affiliate, plan)

        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_bad", 10000, True, NOW)
        assert event.commission_amount_cents == 0
        assert event.plan_id == plan.id

    async def test_paused_affiliate_earns_nothing(self, commission_engine, seed, tenant_id):
        affiliate = await seed.affiliate(status="PAUSED")
        plan = await seed.plan()
        await seed.assign(affiliate, plan)

        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_p", 10000, True, NOW)
        assert event.commission_amount_cents == 0

    async def test_terminated_affiliate_earns_no_tier_bonus(self, commission_engine, seed, tenant_id,
                                                            session_factory, load):
        affiliate = await seed.affiliate(status="TERMINATED", conversions=9, revenue_cents=90000)
        plan = await seed.plan(tier_enabled=True)
        await seed.tier(plan, "Gold", level=1, min_conversions=10, min_revenue_cents=100000, bonus_cents=5000)
        await seed.assign(affiliate, plan)

        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_t", 10000, True, NOW)

        assert event.commission_amount_cents == 0
        assert await count_events(session_factory, tenant_id, attribution_model="TIER_BONUS") == 0
        refreshed = await load(Affiliate, affiliate.id)
        assert refreshed.lifetime_conversions == 10
        assert refreshed.current_tier_id is None

        result = await commission_engine.tier_service.check_and_process_tier_upgrade(affiliate.id, plan.id)
        assert not result.upgraded
        assert not result.bonus_awarded

    async def test_unknown_affiliate(self, commission_engine, tenant_id):
        with pytest.raises(AffiliateNotFoundError):
            await commission_engine.compute_and_record_commission(tenant_id, uuid.uuid4(), "evt_u", 100, True, NOW)

    async def test_negative_amount_rejected(self, commission_engine, enrolled, tenant_id):
        affiliate, _ = enrolled
        with pytest.raises(ValueError):
            await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_n", -1, True, NOW)

    async def test_engine_counts_subscription_cycles(self, commission_engine, seed, tenant_id):
        affiliate = await seed.affiliate()
        plan = await seed.plan(recurring_enabled=True, recurring_percent_bps=500, recurring_months=2)
        await seed.assign(affiliate, plan)

        await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "inv_0", 10000, True, NOW, subscription_id="sub_1",
        )
        amounts = []
        for cycle in range(1, 4):
            event = await commission_engine.compute_and_record_commission(
                tenant_id, affiliate.id, f"inv_{cycle}", 10000, False, NOW + timedelta(days=30 * cycle),
                subscription_id="sub_1",
            )
            assert event.recurring_cycle == cycle
            amounts.append(event.commission_amount_cents)

        assert amounts == [500, 500, 0]

    async def test_promotion_bonus_and_usage(self, commission_engine, seed, enrolled, tenant_id, load):
        affiliate, plan = enrolled
        promotion = await seed.promotion(
            plan, bonus_flat_cents=250, max_uses=1,
            starts_at=NOW - timedelta(days=1), ends_at=NOW + timedelta(days=1),
        )

        first = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_pr1", 10000, True, NOW)
        second = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_pr2", 10000, True, NOW)

        assert first.promotion_bonus_cents == 250
        assert first.commission_amount_cents == 1250
        assert second.promotion_bonus_cents == 0
        assert (await load(type(promotion), promotion.id)).uses_count == 1

    async def test_eligible_promotions_stack(self, commission_engine, seed, enrolled, tenant_id, load):
        affiliate, plan = enrolled
        window = dict(starts_at=NOW - timedelta(days=1), ends_at=NOW + timedelta(days=1))
        launch = await seed.promotion(plan, bonus_flat_cents=250, **window)
        spring = await seed.promotion(plan, name="Spring", bonus_flat_cents=100, **window)

        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_st", 10000, True, NOW)

        assert event.promotion_bonus_cents == 350
        assert event.commission_amount_cents == 1350
        assert sorted(event.extra_info["promotion_ids"]) == sorted([str(launch.id), str(spring.id)])
        for promotion in (launch, spring):
            assert (await load(type(promotion), promotion.id)).uses_count == 1


class TestEndToEnd:
    async def test_tenth_conversion_earns_initial_rate_and_tier_bonus(
        self, commission_engine, seed, tenant_id, session_factory, load,
    ):
        affiliate = await seed.affiliate()
        plan = await seed.plan(
            percent_bps=1000, initial_percent_bps=1500, recurring_percent_bps=800,
            recurring_enabled=True, hold_days=7, tier_enabled=True,
        )
        tier = await seed.tier(plan, "Gold", level=1, min_conversions=10, min_revenue_cents=100000,
                               percent_bps=1200, bonus_cents=5000)
        await seed.assign(affiliate, plan)

        for i in range(9):
            await commission_engine.compute_and_record_commission(
                tenant_id, affiliate.id, f"pay_{i}", 10000, True, NOW + timedelta(minutes=i),
            )
        assert await count_events(session_factory, tenant_id) == 9

        tenth = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "pay_9", 10000, True, NOW + timedelta(minutes=9),
        )

        assert tenth.commission_amount_cents == 1500
        assert await count_events(session_factory, tenant_id) == 11

        refreshed = await load(Affiliate, affiliate.id)
        assert refreshed.lifetime_conversions == 10
        assert refreshed.lifetime_revenue_cents == 100000
        assert refreshed.current_tier_id == tier.id

        async with session_factory() as session:
            bonus = (await session.execute(
                select(CommissionEvent).where(CommissionEvent.attribution_model == "TIER_BONUS")
            )).scalar_one()
        assert bonus.commission_amount_cents == 5000
        assert bonus.tier_bonus_cents == 5000
        assert bonus.status == "APPROVED"
        assert bonus.tier_id == tier.id


class TestClawback:
    async def test_clawback_restores_counters_once(self, commission_engine, enrolled, tenant_id, load):
        affiliate, _ = enrolled
        keep = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "keep", 5000, True, NOW)
        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "refund", 10000, True, NOW)

        clawed = await commission_engine.clawback_commission(event.id, "refund")
        assert clawed.status == "CLAWED_BACK"
        assert clawed.clawback_reason == "refund"

        again = await commission_engine.clawback_commission(event.id, "refund")
        assert again.status == "CLAWED_BACK"

        refreshed = await load(Affiliate, affiliate.id)
        assert refreshed.lifetime_conversions == 1
        assert refreshed.lifetime_revenue_cents == keep.event_amount_cents

    async def test_clawback_disabled_plan_rejected(self, commission_engine, seed, tenant_id):
        affiliate = await seed.affiliate()
        plan = await seed.plan(clawback_enabled=False)
        await seed.assign(affiliate, plan)
        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "e", 10000, True, NOW)

        with pytest.raises(ClawbackNotPermittedError):
            await commission_engine.clawback_commission(event.id, "refund")

    async def test_paid_event_rejected_then_reversed(self, commission_engine, enrolled, tenant_id,
                                                     session_factory, load):
        affiliate, _ = enrolled
        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "paid", 10000, True, NOW)
        await commission_engine.approve_matured_commissions(now=NOW + timedelta(days=8))
        await commission_engine.mark_commissions_paid(tenant_id, [event.id], "PAYOUT-1")

        with pytest.raises(ClawbackNotPermittedError):
            await commission_engine.clawback_commission(event.id, "refund")

        reversal = await commission_engine.reverse_paid_commission(event.id, "chargeback")
        repeat = await commission_engine.reverse_paid_commission(event.id, "chargeback")

        assert repeat.id == reversal.id
        assert reversal.commission_amount_cents == -1000
        assert reversal.status == "APPROVED"
        assert reversal.reversal_of_id == event.id
        assert (await load(CommissionEvent, event.id)).status == "PAID"
        assert (await load(Affiliate, affiliate.id)).lifetime_conversions == 0
        assert await count_events(session_factory, tenant_id, attribution_model="REVERSAL") == 1

    async def test_refund_by_source_object(self, commission_engine, enrolled, tenant_id):
        affiliate, _ = enrolled
        event = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "evt_ch", 10000, True, NOW, source_object_id="ch_1",
        )
        outcomes = await commission_engine.clawback_by_source_object(tenant_id, "ch_1", "refund")
        assert [(o.event_id, o.action) for o in outcomes] == [(event.id, "CLAWED_BACK")]

        outcomes = await commission_engine.clawback_by_source_object(tenant_id, "ch_1", "refund")
        assert outcomes[0].action == "ALREADY_CLAWED_BACK"


class TestHoldMaturation:
    async def test_approves_only_matured_events(self, commission_engine, enrolled, tenant_id):
        affiliate, _ = enrolled
        old = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "old", 100, True, NOW)
        new = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "new", 100, True, NOW + timedelta(days=5),
        )

        result = await commission_engine.approve_matured_commissions(now=NOW + timedelta(days=8))

        assert result.approved == 1
        assert (await commission_engine.get_event(old.id)).status == "APPROVED"
        assert (await commission_engine.get_event(new.id)).status == "PENDING"

    async def test_disputed_events_stay_pending(self, commission_engine, enrolled, tenant_id):
        affiliate, _ = enrolled
        event = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "disp", 100, True, NOW)

        async def disputed(candidate):
            return candidate.id == event.id

        result = await commission_engine.approve_matured_commissions(
            now=NOW + timedelta(days=8), dispute_checker=disputed,
        )
        assert result.disputed == 1
        assert result.approved == 0
        assert (await commission_engine.get_event(event.id)).status == "PENDING"

    async def test_mark_paid_is_all_or_nothing(self, commission_engine, enrolled, tenant_id):
        affiliate, _ = enrolled
        approved = await commission_engine.compute_and_record_commission(tenant_id, affiliate.id, "a", 100, True, NOW)
        await commission_engine.approve_matured_commissions(now=NOW + timedelta(days=8))
        pending = await commission_engine.compute_and_record_commission(
            tenant_id, affiliate.id, "b", 100, True, NOW + timedelta(days=30),
        )

        with pytest.raises(InvalidStatusTransitionError):
            await commission_engine.mark_commissions_paid(tenant_id, [approved.id, pending.id], "PAYOUT-2")
        assert (await commission_engine.get_event(approved.id)).status == "APPROVED"


def fixed_verdict(recommendation, severity, risk_score, seen=None):
    """Fraud checker that always returns the same verdict."""

    async def _check(request):
        if seen is not None:
            seen.append(request)
        alert = FraudAlert(alert_type="SELF_REFERRAL", severity=severity, description="matched")
        return FraudCheckResult(risk_score=risk_score, recommendation=recommendation, alerts=[alert])

    return _check


@pytest.fixture
def engine_with(session_factory, serializable_factory, tier_service):
    def _make(fraud_checker):
        return CommissionEngine(session_factory, serializable_factory, tier_service, fraud_checker=fraud_checker)
    return _make


class TestFraudScreening:
    async def test_rejected_payment_is_recorded_clawed_back(self, engine_with, enrolled, tenant_id, load):
        affiliate, _ = enrolled
        engine = engine_with(fixed_verdict("REJECT", "CRITICAL", 40))

        event = await engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_fr", 10000, True, NOW)

        assert event.status == "CLAWED_BACK"
        assert event.commission_amount_cents == 0
        assert event.clawback_reason == "Fraud detected: SELF_REFERRAL"
        assert event.extra_info["fraud_rejected"] is True
        assert event.extra_info["fraud_alerts"] == ["SELF_REFERRAL"]
        refreshed = await load(Affiliate, affiliate.id)
        assert refreshed.lifetime_conversions == 0
        assert refreshed.status == "ACTIVE"

        replay = await engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_fr", 10000, True, NOW)
        assert replay.id == event.id

    async def test_rejection_can_pause_the_affiliate(self, engine_with, enrolled, tenant_id, load, monkeypatch):
        monkeypatch.setattr(settings, "FRAUD_AUTO_PAUSE_ON_REJECT", True)
        affiliate, _ = enrolled
        engine = engine_with(fixed_verdict("REJECT", "CRITICAL", 40))

        await engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_fp", 10000, True, NOW)

        assert (await load(Affiliate, affiliate.id)).status == "PAUSED"

    async def test_review_keeps_event_on_hold(self, engine_with, enrolled, tenant_id):
        affiliate, _ = enrolled
        engine = engine_with(fixed_verdict("REVIEW", "HIGH", 25))

        held = await engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_rv", 10000, True, NOW)

        assert held.status == "PENDING"
        assert held.commission_amount_cents == 1000
        assert held.extra_info["fraud_hold"] is True
        assert held.extra_info["fraud_risk_score"] == 25

        result = await engine.approve_matured_commissions(now=NOW + timedelta(days=8))
        assert result.held == 1
        assert result.approved == 0
        assert (await engine.get_event(held.id)).status == "PENDING"

    async def test_failing_checker_does_not_block(self, engine_with, enrolled, tenant_id, load):
        affiliate, _ = enrolled

        async def unavailable(request):
            raise RuntimeError("fraud backend unavailable")

        engine = engine_with(unavailable)
        event = await engine.compute_and_record_commission(tenant_id, affiliate.id, "evt_fe", 10000, True, NOW)

        assert event.status == "PENDING"
        assert event.commission_amount_cents == 1000
        assert "fraud_hold" not in event.extra_info
        assert (await load(Affiliate, affiliate.id)).lifetime_conversions == 1

    async def test_checker_receives_payment_context(self, engine_with, enrolled, seed, attribution_service,
                                                    tenant_id):
        affiliate, _ = enrolled
        await seed.referral_code(affiliate, "RIVERA10")
        touch_id = await attribution_service.record_touch(
            "RIVERA10", VisitorContext(tenant_id=tenant_id, visitor_fingerprint="fp_ctx"),
        )
        seen = []
        engine = engine_with(fixed_verdict("APPROVE", "LOW", 5, seen=seen))

        event = await engine.compute_and_record_commission(
            tenant_id, affiliate.id, "evt_ctx", 10000, True, NOW, touch_id=touch_id, ip_address_hash="ip_9f2c",
        )

        assert [r.source_event_id for r in seen] == ["evt_ctx"]
        assert seen[0].touch_id == touch_id
        assert seen[0].ip_address_hash == "ip_9f2c"
        assert seen[0].event_amount_cents == 10000
        assert event.extra_info["fraud_risk_score"] == 5
        assert "fraud_hold" not in event.extra_info
