"""
Shared fixtures for the affiliate commission tests.

Every test gets its own file-backed SQLite database under tmp_path, so the
BEGIN IMMEDIATE writer lock behaves as it does in development.
"""
import os

# Settings are read at import time; these must be in place before any app import.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./affiliate_commissions_test.db")
os.environ.setdefault("SERIALIZABLE_TIMEOUT_SECONDS", "30")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from app.database import (
    create_engine_for_url, init_db, make_serializable_session_factory, make_session_factory,
)
from app.models.affiliate import Affiliate, AttributionConfig, ReferralCode
from app.models.commission import (
    CommissionPlan, CommissionPromotion, CommissionTier, PlanAssignment,
)
from app.services.attribution_service import AttributionService
from app.services.commission_engine import CommissionEngine
from app.services.payment_event_service import PaymentEventService
from app.services.plan_registry import PlanRegistry
from app.services.reporting_service import ReportingService
from app.services.tier_service import TierService


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'commissions.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def serializable_factory(db_engine):
    return make_serializable_session_factory(db_engine)


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


# ==================== Services ====================

@pytest.fixture
def tier_service(session_factory, serializable_factory):
    return TierService(session_factory, serializable_factory)


@pytest.fixture
def commission_engine(session_factory, serializable_factory, tier_service):
    return CommissionEngine(session_factory, serializable_factory, tier_service)


@pytest.fixture
def attribution_service(session_factory, serializable_factory):
    return AttributionService(session_factory, serializable_factory)


@pytest.fixture
def plan_registry(session_factory, serializable_factory):
    return PlanRegistry(session_factory, serializable_factory)


@pytest.fixture
def reporting_service(session_factory):
    return ReportingService(session_factory)


@pytest.fixture
def payment_service(commission_engine, attribution_service):
    return PaymentEventService(engine=commission_engine, attribution=attribution_service)


# ==================== Seed data ====================

class Seeder:
    """Writes fixture rows the way the tenant admin surface would."""

    def __init__(self, session_factory, tenant_id: uuid.UUID):
        self.session_factory = session_factory
        self.tenant_id = tenant_id

    async def _add(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def affiliate(self, name: str = "Dr. Rivera", status: str = "ACTIVE",
                        conversions: int = 0, revenue_cents: int = 0,
                        tenant_id: Optional[uuid.UUID] = None) -> Affiliate:
        return await self._add(Affiliate(
            tenant_id=tenant_id or self.tenant_id,
            display_name=name,
            status=status,
            lifetime_conversions=conversions,
            lifetime_revenue_cents=revenue_cents,
        ))

    async def plan(self, **overrides) -> CommissionPlan:
        values = dict(
            tenant_id=self.tenant_id,
            name="Standard",
            version=1,
            plan_type="PERCENT",
            percent_bps=1000,
            applies_to="FIRST_PAYMENT_ONLY",
            hold_days=7,
            clawback_enabled=True,
            recurring_enabled=False,
            tier_enabled=False,
        )
        values.update(overrides)
        return await self._add(CommissionPlan(**values))

    async def assign(self, affiliate: Affiliate, plan: CommissionPlan,
                     effective_from: Optional[datetime] = None) -> PlanAssignment:
        return await self._add(PlanAssignment(
            tenant_id=affiliate.tenant_id,
            affiliate_id=affiliate.id,
            plan_id=plan.id,
            effective_from=effective_from or datetime.now(timezone.utc) - timedelta(days=365),
        ))

    async def tier(self, plan: CommissionPlan, name: str, level: int, min_conversions: int = 0,
                   min_revenue_cents: int = 0, bonus_cents: int = 0, percent_bps: Optional[int] = None,
                   perks: Optional[list] = None) -> CommissionTier:
        return await self._add(CommissionTier(
            tenant_id=plan.tenant_id,
            plan_id=plan.id,
            name=name,
            level=level,
            min_conversions=min_conversions,
            min_revenue_cents=min_revenue_cents,
            bonus_cents=bonus_cents,
            percent_bps=percent_bps,
            perks=perks,
        ))

    async def referral_code(self, affiliate: Affiliate, code: str, is_active: bool = True) -> ReferralCode:
        return await self._add(ReferralCode(
            tenant_id=affiliate.tenant_id,
            affiliate_id=affiliate.id,
            code=code,
            is_active=is_active,
        ))

    async def promotion(self, plan: CommissionPlan, **overrides) -> CommissionPromotion:
        now = datetime.now(timezone.utc)
        values = dict(
            tenant_id=plan.tenant_id,
            plan_id=plan.id,
            name="Launch week",
            is_active=True,
            starts_at=now - timedelta(days=30),
            ends_at=now + timedelta(days=30),
            uses_count=0,
        )
        values.update(overrides)
        return await self._add(CommissionPromotion(**values))

    async def attribution_config(self, **overrides) -> AttributionConfig:
        values = dict(
            tenant_id=self.tenant_id,
            new_customer_model="FIRST_CLICK",
            returning_customer_model="LAST_CLICK",
            cookie_window_days=30,
        )
        values.update(overrides)
        return await self._add(AttributionConfig(**values))


@pytest.fixture
def seed(session_factory, tenant_id):
    return Seeder(session_factory, tenant_id)


@pytest.fixture
def load(session_factory):
    """Fetch a fresh copy of a row by primary key."""

    async def _load(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)

    return _load
