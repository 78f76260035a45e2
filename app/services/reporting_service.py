"""
Commission reporting with small-number suppression.

Every aggregate leaves this module as a ReportSlice that has passed through
suppress_slice(): a slice with fewer conversions than the configured floor
has its conversion count hidden and its money figures withheld or rounded,
so low-volume affiliate data cannot be tied back to individual patients.
protect_complement() hides one more slice wherever a lone suppressed
slice could be recovered by subtracting the shown ones from a total.
Suppression happens at read time only; nothing here writes.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, func, case, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.datetime_utils import as_utc, utcnow
from app.database import async_session_factory
from app.models.affiliate import Affiliate
from app.models.commission import CommissionEvent, CommissionEventKind, CommissionEventStatus
from app.schemas.commission import AffiliateSummaryReport, CommissionStatsReport, ReportSlice
from app.services.commission_rates import round_cents

logger = logging.getLogger(__name__)


def round_to_unit(value_cents: Optional[int], unit_cents: int) -> Optional[int]:
    if value_cents is None:
        return None
    return round_cents(Decimal(value_cents) / Decimal(unit_cents)) * unit_cents


def suppress_slice(
    label: str,
    conversions: int,
    revenue_cents: int,
    commission_cents: int,
    floor: Optional[int] = None,
    mode: Optional[str] = None,
    rounding_cents: Optional[int] = None,
) -> ReportSlice:
    """
    Build a report slice, suppressing it when conversions fall below the floor.

    WITHHOLD mode drops revenue and commission; ROUND mode rounds them to
    the nearest `rounding_cents`.
    """
    floor = settings.REPORTING_SUPPRESSION_FLOOR if floor is None else floor
    mode = (mode or settings.REPORTING_SUPPRESSION_MODE).upper()
    rounding_cents = rounding_cents or settings.REPORTING_ROUNDING_CENTS

    if conversions >= floor:
        return ReportSlice(
            label=label,
            conversions=conversions,
            conversions_display=str(conversions),
            revenue_cents=revenue_cents,
            commission_cents=commission_cents,
        )

    return _hidden_slice(label, f"<{floor}", revenue_cents, commission_cents, mode, rounding_cents)


def _hidden_slice(label: str, conversions_display: str, revenue_cents: int, commission_cents: int,
                  mode: str, rounding_cents: int) -> ReportSlice:
    if mode == "ROUND":
        revenue, commission = round_to_unit(revenue_cents, rounding_cents), round_to_unit(commission_cents, rounding_cents)
    else:
        revenue, commission = None, None

    return ReportSlice(
        label=label,
        conversions=None,
        conversions_display=conversions_display,
        revenue_cents=revenue,
        commission_cents=commission,
        suppressed=True,
    )


def protect_complement(
    slices: List[ReportSlice],
    total: ReportSlice,
    mode: Optional[str] = None,
    rounding_cents: Optional[int] = None,
) -> List[ReportSlice]:
    """
    Hide a second slice when exactly one of the slices adding up to a shown total is suppressed.

    Otherwise the suppressed figures are the total minus the shown slices.
    The smallest shown slice is hidden alongside it and displayed as "*".
    """
    if total.suppressed:
        return slices
    shown = [s for s in slices if not s.suppressed]
    if len(slices) - len(shown) != 1 or not shown:
        return slices

    mode = (mode or settings.REPORTING_SUPPRESSION_MODE).upper()
    rounding_cents = rounding_cents or settings.REPORTING_ROUNDING_CENTS
    smallest = min(shown, key=lambda s: (s.conversions, s.commission_cents, s.label))
    return [
        _hidden_slice(s.label, "*", s.revenue_cents, s.commission_cents, mode, rounding_cents)
        if s is smallest else s
        for s in slices
    ]


# Aggregate columns shared by every query below
_is_conversion = CommissionEvent.attribution_model == CommissionEventKind.CONVERSION.value
CONVERSIONS = func.coalesce(func.sum(case((_is_conversion, 1), else_=0)), 0)
REVENUE = func.coalesce(func.sum(case((_is_conversion, CommissionEvent.event_amount_cents), else_=0)), 0)
COMMISSION = func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0)


class ReportingService:
    """Read-only aggregate views over the commission ledger."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    def _period_filter(self, tenant_id: uuid.UUID, start: datetime, end: datetime,
                       affiliate_id: Optional[uuid.UUID] = None):
        conditions = [
            CommissionEvent.tenant_id == tenant_id,
            CommissionEvent.occurred_at >= start,
            CommissionEvent.occurred_at < end,
        ]
        if affiliate_id is not None:
            conditions.append(CommissionEvent.affiliate_id == affiliate_id)
        return and_(*conditions)

    async def get_affiliate_commission_stats(
        self,
        tenant_id: uuid.UUID,
        affiliate_id: Optional[uuid.UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CommissionStatsReport:
        """
        Per-status breakdown, totals and a daily trend for one affiliate (or the whole tenant).

        Totals leave out CLAWED_BACK events. The daily trend covers at most
        the last REPORTING_TREND_DAYS days of the period.
        """
        end = as_utc(end or utcnow())
        start = as_utc(start or end - timedelta(days=settings.REPORTING_TREND_DAYS))
        period = self._period_filter(tenant_id, start, end, affiliate_id)

        trend_start = max(start, end - timedelta(days=settings.REPORTING_TREND_DAYS))
        trend_period = self._period_filter(tenant_id, trend_start, end, affiliate_id)
        day = func.date(CommissionEvent.occurred_at)

        async with self.session_factory() as session:
            status_rows = (await session.execute(
                select(CommissionEvent.status, CONVERSIONS, REVENUE, COMMISSION)
                .where(period)
                .group_by(CommissionEvent.status)
            )).all()

            daily_rows = (await session.execute(
                select(day, CONVERSIONS, REVENUE, COMMISSION)
                .where(and_(trend_period, CommissionEvent.status != CommissionEventStatus.CLAWED_BACK.value))
                .group_by(day)
                .order_by(day)
            )).all()

        by_status = {}
        total_conversions = total_revenue = total_commission = 0
        for status, conversions, revenue, commission in status_rows:
            by_status[status] = suppress_slice(status, int(conversions), int(revenue), int(commission))
            if status != CommissionEventStatus.CLAWED_BACK.value:
                total_conversions += int(conversions)
                total_revenue += int(revenue)
                total_commission += int(commission)

        totals = suppress_slice("total", total_conversions, total_revenue, total_commission)
        counted = [s for status, s in by_status.items() if status != CommissionEventStatus.CLAWED_BACK.value]
        by_status.update((s.label, s) for s in protect_complement(counted, totals))

        daily = [
            suppress_slice(str(bucket), int(conversions), int(revenue), int(commission))
            for bucket, conversions, revenue, commission in daily_rows
        ]
        if trend_start == start:
            # The trend spans the whole period, so its days add up to the totals
            daily = protect_complement(daily, totals)

        return CommissionStatsReport(
            tenant_id=tenant_id,
            affiliate_id=affiliate_id,
            period_start=start,
            period_end=end,
            totals=totals,
            by_status=by_status,
            daily=daily,
        )

    async def get_tenant_affiliate_summary(
        self,
        tenant_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AffiliateSummaryReport:
        """
        One slice per affiliate with activity in the period.

        Shown slices come first, largest commission first. Suppressed slices
        follow in name order so their position says nothing about their size.
        """
        end = as_utc(end or utcnow())
        start = as_utc(start or end - timedelta(days=settings.REPORTING_TREND_DAYS))

        async with self.session_factory() as session:
            rows = (await session.execute(
                select(Affiliate.display_name, CONVERSIONS, REVENUE, COMMISSION)
                .select_from(CommissionEvent)
                .join(Affiliate, Affiliate.id == CommissionEvent.affiliate_id)
                .where(
                    and_(
                        self._period_filter(tenant_id, start, end),
                        CommissionEvent.status != CommissionEventStatus.CLAWED_BACK.value,
                    )
                )
                .group_by(Affiliate.id, Affiliate.display_name)
                .order_by(COMMISSION.desc())
            )).all()

        slices = [
            suppress_slice(name, int(conversions), int(revenue), int(commission))
            for name, conversions, revenue, commission in rows
        ]
        shown = [s for s in slices if not s.suppressed]
        hidden = sorted((s for s in slices if s.suppressed), key=lambda s: s.label)

        return AffiliateSummaryReport(
            tenant_id=tenant_id,
            period_start=start,
            period_end=end,
            affiliates=shown + hidden,
        )
