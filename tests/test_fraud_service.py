"""Fraud rules over attribution touches and their scoring."""
import pytest

from app.config import settings
from app.schemas.commission import FraudAlert, FraudCheckRequest, VisitorContext
from app.services.fraud_service import TouchFraudChecker, default_fraud_checker, score_alerts


def alert(severity, alert_type="SELF_REFERRAL") -> FraudAlert:
    return FraudAlert(alert_type=alert_type, severity=severity, description="test")


def screen(tenant_id, affiliate, **extra) -> FraudCheckRequest:
    return FraudCheckRequest(
        tenant_id=tenant_id, affiliate_id=affiliate.id, source_event_id="pi_fraud", event_amount_cents=5000, **extra,
    )


@pytest.fixture
def checker(session_factory):
    return TouchFraudChecker(session_factory)


@pytest.fixture
async def rivera(seed):
    affiliate = await seed.affiliate()
    await seed.referral_code(affiliate, "RIVERA10")
    return affiliate


async def touch_from(attribution_service, tenant_id, ip_hash, count, code="RIVERA10", convert=False):
    touch_ids = []
    for i in range(count):
        visitor = VisitorContext(
            tenant_id=tenant_id, visitor_fingerprint=f"fp_{code}_{ip_hash}_{i}", ip_address_hash=ip_hash,
        )
        touch_ids.append(await attribution_service.record_touch(code, visitor))
        if convert:
            await attribution_service.record_conversion(visitor)
    return touch_ids


class TestScoring:
    def test_no_alerts_approves(self):
        result = score_alerts([])
        assert result.risk_score == 0
        assert result.recommendation == "APPROVE"

    def test_critical_rejects(self):
        assert score_alerts([alert("CRITICAL")]).recommendation == "REJECT"

    def test_high_needs_review(self):
        result = score_alerts([alert("HIGH")])
        assert result.risk_score == 25
        assert result.recommendation == "REVIEW"

    def test_medium_and_low_add_up_to_review(self):
        assert score_alerts([alert("MEDIUM")]).recommendation == "APPROVE"
        assert score_alerts([alert("MEDIUM"), alert("LOW"), alert("LOW")]).recommendation == "REVIEW"

    def test_score_is_capped(self):
        assert score_alerts([alert("CRITICAL")] * 4).risk_score == 100


class TestSelfReferral:
    async def test_many_touches_from_buyer_ip(self, checker, attribution_service, rivera, tenant_id):
        await touch_from(attribution_service, tenant_id, "ip_home", 11)

        result = await checker(screen(tenant_id, rivera, ip_address_hash="ip_home"))

        assert result.alert_types == ["SELF_REFERRAL"]
        assert result.alerts[0].severity == "HIGH"
        assert result.alerts[0].evidence["touch_count"] == 11
        assert result.recommendation == "REVIEW"

    async def test_threshold_itself_is_allowed(self, checker, attribution_service, rivera, tenant_id):
        await touch_from(attribution_service, tenant_id, "ip_home", 10)

        result = await checker(screen(tenant_id, rivera, ip_address_hash="ip_home"))
        assert result.alerts == []

    async def test_other_affiliates_touches_do_not_count(self, checker, attribution_service, seed, rivera, tenant_id):
        chen = await seed.affiliate("Dr. Chen")
        await seed.referral_code(chen, "CHEN")
        await touch_from(attribution_service, tenant_id, "ip_home", 11, code="CHEN")

        result = await checker(screen(tenant_id, rivera, ip_address_hash="ip_home"))
        assert result.alerts == []


class TestDuplicateIp:
    async def test_repeat_conversions_from_one_ip(self, checker, attribution_service, rivera, tenant_id):
        await touch_from(attribution_service, tenant_id, "ip_office", 3, convert=True)

        result = await checker(screen(tenant_id, rivera, ip_address_hash="ip_office"))

        assert result.alert_types == ["DUPLICATE_IP"]
        assert result.alerts[0].severity == "MEDIUM"
        assert result.risk_score == 15
        assert result.recommendation == "APPROVE"

    async def test_current_touch_is_not_counted(self, checker, attribution_service, rivera, tenant_id):
        touch_ids = await touch_from(attribution_service, tenant_id, "ip_office", 3, convert=True)

        result = await checker(screen(tenant_id, rivera, touch_id=touch_ids[-1]))

        assert result.alerts == []

    async def test_far_over_limit_is_high(self, checker, attribution_service, rivera, tenant_id, monkeypatch):
        monkeypatch.setattr(settings, "FRAUD_MAX_CONVERSIONS_PER_IP", 1)
        await touch_from(attribution_service, tenant_id, "ip_office", 3, convert=True)

        result = await checker(screen(tenant_id, rivera, ip_address_hash="ip_office"))

        assert result.alerts[0].severity == "HIGH"
        assert result.recommendation == "REVIEW"


async def test_ip_hash_falls_back_to_touch(checker, attribution_service, rivera, tenant_id):
    touch_ids = await touch_from(attribution_service, tenant_id, "ip_home", 12)

    result = await checker(screen(tenant_id, rivera, touch_id=touch_ids[0]))

    assert result.alert_types == ["SELF_REFERRAL"]


async def test_no_ip_means_nothing_to_check(checker, rivera, tenant_id):
    result = await checker(screen(tenant_id, rivera))
    assert result.recommendation == "APPROVE"
    assert result.alerts == []


async def test_checker_can_be_disabled(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "FRAUD_CHECK_ENABLED", False)
    assert default_fraud_checker(session_factory) is None
    monkeypatch.setattr(settings, "FRAUD_CHECK_ENABLED", True)
    assert isinstance(default_fraud_checker(session_factory), TouchFraudChecker)
