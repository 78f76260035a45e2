"""HTTP surface over the commission services."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.deps import (
    get_attribution_service, get_commission_engine, get_plan_registry,
    get_reporting_service, get_tier_service,
)
from app.main import app

BASE = "/api/v1/affiliate-commissions"


@pytest.fixture
async def client(commission_engine, tier_service, attribution_service, plan_registry, reporting_service):
    app.dependency_overrides[get_commission_engine] = lambda: commission_engine
    app.dependency_overrides[get_tier_service] = lambda: tier_service
    app.dependency_overrides[get_attribution_service] = lambda: attribution_service
    app.dependency_overrides[get_plan_registry] = lambda: plan_registry
    app.dependency_overrides[get_reporting_service] = lambda: reporting_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def rivera(seed):
    affiliate = await seed.affiliate()
    await seed.assign(affiliate, await seed.plan(percent_bps=1000))
    await seed.referral_code(affiliate, "RIVERA10")
    return affiliate


def payment_body(tenant_id, source_event_id="pi_api_1", **overrides):
    body = {
        "tenant_id": str(tenant_id),
        "source_event_id": source_event_id,
        "source_object_id": f"ch_{source_event_id}",
        "amount_cents": 25000,
        "is_first_payment": True,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    body.update(overrides)
    return body


async def test_payment_succeeded_then_refunded(client, rivera, tenant_id):
    response = await client.post(f"{BASE}/payments/succeeded", json=payment_body(tenant_id, ref_code="RIVERA10"))
    assert response.status_code == 200
    event = response.json()
    assert event["affiliate_id"] == str(rivera.id)
    assert event["commission_amount_cents"] == 2500
    assert event["status"] == "PENDING"

    response = await client.post(f"{BASE}/payments/refunded", json={
        "tenant_id": str(tenant_id), "source_object_id": "ch_pi_api_1", "reason": "chargeback",
    })
    assert response.status_code == 200
    assert [o["action"] for o in response.json()] == ["CLAWED_BACK"]

    response = await client.get(f"{BASE}/events/{event['id']}")
    assert response.json()["status"] == "CLAWED_BACK"


async def test_unattributable_payment_returns_null(client, tenant_id):
    response = await client.post(f"{BASE}/payments/succeeded", json=payment_body(tenant_id, ref_code="NOBODY"))
    assert response.status_code == 200
    assert response.json() is None


async def test_payment_without_affiliate_reference_is_rejected(client, tenant_id):
    response = await client.post(f"{BASE}/payments/succeeded", json=payment_body(tenant_id))
    assert response.status_code == 422


async def test_unknown_event_is_404(client):
    response = await client.get(f"{BASE}/events/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["type"] == "CommissionEventNotFoundError"


async def test_clawback_of_paid_event_is_409(client, commission_engine, rivera, tenant_id):
    event = await commission_engine.compute_and_record_commission(
        tenant_id=tenant_id, affiliate_id=rivera.id, source_event_id="pi_paid",
        event_amount_cents=10000, is_first_payment=True,
        occurred_at=datetime.now(timezone.utc) - timedelta(days=30),
    )
    await commission_engine.approve_matured_commissions()
    response = await client.post(f"{BASE}/events/mark-paid", json={
        "tenant_id": str(tenant_id), "event_ids": [str(event.id)], "payout_reference": "po_2026_10",
    })
    assert response.status_code == 200
    assert response.json()[0]["status"] == "PAID"

    response = await client.post(f"{BASE}/events/{event.id}/clawback", json={"reason": "late refund"})
    assert response.status_code == 409

    response = await client.post(f"{BASE}/events/{event.id}/reverse", json={"reason": "late refund"})
    assert response.status_code == 200
    assert response.json()["commission_amount_cents"] == -1000


async def test_touch_and_attribution(client, rivera, tenant_id):
    visitor = {"tenant_id": str(tenant_id), "visitor_fingerprint": "fp_api"}
    response = await client.post(f"{BASE}/touches", json={**visitor, "referral_code": "rivera10"})
    assert response.status_code == 201

    response = await client.post(f"{BASE}/attribution/resolve", json=visitor)
    assert response.status_code == 200
    assert response.json()["affiliate_id"] == str(rivera.id)


async def test_unknown_referral_code_touch_is_404(client, tenant_id):
    response = await client.post(f"{BASE}/touches", json={
        "tenant_id": str(tenant_id), "visitor_fingerprint": "fp_api", "referral_code": "GHOST",
    })
    assert response.status_code == 404


async def test_report_period_must_be_ordered(client, tenant_id):
    response = await client.get(f"{BASE}/reports/stats", params={
        "tenant_id": str(tenant_id),
        "start": "2026-10-01T00:00:00+00:00",
        "end": "2026-09-01T00:00:00+00:00",
    })
    assert response.status_code == 400


async def test_plan_reassignment(client, seed, rivera, tenant_id):
    premium = await seed.plan(name="Premium", percent_bps=2000)
    response = await client.post(f"{BASE}/affiliates/{rivera.id}/plan", json={
        "tenant_id": str(tenant_id), "plan_id": str(premium.id),
    })
    assert response.status_code == 200
    assert response.json()["plan_id"] == str(premium.id)
