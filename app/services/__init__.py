# Services module
from app.services.attribution_service import AttributionService
from app.services.commission_engine import CommissionEngine
from app.services.payment_event_service import PaymentEventService
from app.services.plan_registry import PlanRegistry
from app.services.reporting_service import ReportingService
from app.services.tier_service import TierService

__all__ = [
    "AttributionService",
    "CommissionEngine",
    "PaymentEventService",
    "PlanRegistry",
    "ReportingService",
    "TierService",
]
