"""
Fraud screening for new conversions.

Rules run against the tenant's attribution touches and raise alerts; the
alerts are scored into a 0-100 risk score and a recommendation. The
commission engine consults a checker before recording a commission:
REJECT records nothing payable, REVIEW keeps the event on hold.
"""
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, List

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.datetime_utils import utcnow
from app.database import async_session_factory
from app.models.affiliate import AttributionTouch
from app.schemas.commission import FraudAlert, FraudCheckRequest, FraudCheckResult

logger = logging.getLogger(__name__)

# Screens one payment before its commission is recorded
FraudChecker = Callable[[FraudCheckRequest], Awaitable[FraudCheckResult]]

SEVERITY_WEIGHTS = {
    "CRITICAL": 40,
    "HIGH": 25,
    "MEDIUM": 15,
    "LOW": 5,
}

REVIEW_SCORE = 25


def score_alerts(alerts: List[FraudAlert]) -> FraudCheckResult:
    """Risk score and recommendation for a set of alerts."""
    score = min(100, sum(SEVERITY_WEIGHTS.get(a.severity, 0) for a in alerts))
    severities = {a.severity for a in alerts}

    if "CRITICAL" in severities:
        recommendation = "REJECT"
    elif "HIGH" in severities or score >= REVIEW_SCORE:
        recommendation = "REVIEW"
    else:
        recommendation = "APPROVE"

    return FraudCheckResult(risk_score=score, recommendation=recommendation, alerts=alerts)


class TouchFraudChecker:
    """Rule-based checker over the affiliate's recent touches."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    async def __call__(self, request: FraudCheckRequest) -> FraudCheckResult:
        async with self.session_factory() as session:
            ip_hash = await self._ip_hash(session, request)
            if not ip_hash:
                return FraudCheckResult()

            since = utcnow() - timedelta(days=settings.FRAUD_LOOKBACK_DAYS)
            alerts = []
            for rule in (self.check_self_referral, self.check_duplicate_ip):
                alert = await rule(session, request, ip_hash, since)
                if alert is not None:
                    alerts.append(alert)

        result = score_alerts(alerts)
        if alerts:
            logger.warning(
                f"Fraud screening of {request.source_event_id} for affiliate {request.affiliate_id}: "
                f"{result.recommendation} (score {result.risk_score}, {', '.join(result.alert_types)})"
            )
        return result

    async def _ip_hash(self, session: AsyncSession, request: FraudCheckRequest) -> Optional[str]:
        if request.ip_address_hash:
            return request.ip_address_hash
        if request.touch_id is None:
            return None
        touch = await session.get(AttributionTouch, request.touch_id)
        return touch.ip_address_hash if touch is not None else None

    async def check_self_referral(self, session: AsyncSession, request: FraudCheckRequest,
                                  ip_hash: str, since) -> Optional[FraudAlert]:
        """Lots of the affiliate's own touches from the buyer's network looks like self-referral."""
        touch_count = (await session.execute(
            select(func.count(AttributionTouch.id)).where(
                and_(
                    AttributionTouch.tenant_id == request.tenant_id,
                    AttributionTouch.affiliate_id == request.affiliate_id,
                    AttributionTouch.ip_address_hash == ip_hash,
                    AttributionTouch.touched_at >= since,
                )
            )
        )).scalar() or 0

        if touch_count <= settings.FRAUD_SELF_REFERRAL_TOUCH_THRESHOLD:
            return None
        return FraudAlert(
            alert_type="SELF_REFERRAL",
            severity="HIGH",
            description=f"{touch_count} touches from the buyer's IP in {settings.FRAUD_LOOKBACK_DAYS} days",
            evidence={"ip_hash": ip_hash, "touch_count": touch_count},
        )

    async def check_duplicate_ip(self, session: AsyncSession, request: FraudCheckRequest,
                                 ip_hash: str, since) -> Optional[FraudAlert]:
        """Repeated conversions for the same affiliate from one IP."""
        query = select(func.count(AttributionTouch.id)).where(
            and_(
                AttributionTouch.tenant_id == request.tenant_id,
                AttributionTouch.affiliate_id == request.affiliate_id,
                AttributionTouch.ip_address_hash == ip_hash,
                AttributionTouch.converted_at.is_not(None),
                AttributionTouch.converted_at >= since,
            )
        )
        if request.touch_id is not None:
            query = query.where(AttributionTouch.id != request.touch_id)
        conversions = (await session.execute(query)).scalar() or 0

        limit = settings.FRAUD_MAX_CONVERSIONS_PER_IP
        if conversions < limit:
            return None
        return FraudAlert(
            alert_type="DUPLICATE_IP",
            severity="HIGH" if conversions > limit * 2 else "MEDIUM",
            description=f"{conversions} earlier conversions from the same IP (limit {limit})",
            evidence={"ip_hash": ip_hash, "conversion_count": conversions, "limit": limit},
        )


def default_fraud_checker(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[FraudChecker]:
    if not settings.FRAUD_CHECK_ENABLED:
        return None
    return TouchFraudChecker(session_factory)
