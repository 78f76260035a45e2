from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from app.services.attribution_service import AttributionService
from app.services.commission_engine import CommissionEngine
from app.services.payment_event_service import PaymentEventService
from app.services.plan_registry import PlanRegistry
from app.services.reporting_service import ReportingService
from app.services.tier_service import TierService


# Service providers. Each is cached so every request shares the process-wide
# session factories; tests swap them through app.dependency_overrides.

@lru_cache()
def get_tier_service() -> TierService:
    return TierService()


@lru_cache()
def get_commission_engine() -> CommissionEngine:
    return CommissionEngine(tier_service=get_tier_service())


@lru_cache()
def get_attribution_service() -> AttributionService:
    return AttributionService()


@lru_cache()
def get_plan_registry() -> PlanRegistry:
    return PlanRegistry()


@lru_cache()
def get_reporting_service() -> ReportingService:
    return ReportingService()


def get_payment_event_service(
    engine: Annotated[CommissionEngine, Depends(get_commission_engine)],
    attribution: Annotated[AttributionService, Depends(get_attribution_service)],
) -> PaymentEventService:
    return PaymentEventService(engine=engine, attribution=attribution)


# Type aliases for cleaner dependency injection
Engine = Annotated[CommissionEngine, Depends(get_commission_engine)]
Tiers = Annotated[TierService, Depends(get_tier_service)]
Attribution = Annotated[AttributionService, Depends(get_attribution_service)]
Plans = Annotated[PlanRegistry, Depends(get_plan_registry)]
Reports = Annotated[ReportingService, Depends(get_reporting_service)]
Payments = Annotated[PaymentEventService, Depends(get_payment_event_service)]
