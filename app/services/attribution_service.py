"""
Attribution capture and resolution.

Touches are append-only: every inbound referral hit is a new row. A touch
is marked converted at most once. Resolution reads the visitor's touches
inside the tenant's cookie window and applies the tenant's attribution
model to decide which affiliate gets the conversion.
"""
import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.datetime_utils import as_utc, utcnow
from app.core.exceptions import ReferralCodeNotFoundError
from app.core.transactions import run_serializable
from app.database import async_session_factory, serializable_session_factory, get_db_session
from app.models.affiliate import (
    Affiliate, AffiliateStatus, AttributionConfig, AttributionModel, AttributionTouch, ReferralCode,
)
from app.schemas.commission import AffiliateCredit, AttributionResult, VisitorContext

logger = logging.getLogger(__name__)

# Position-based split: first and last touch each get this share
POSITION_ENDPOINT_WEIGHT = 0.4


def normalize_ref_code(code: str) -> str:
    return (code or "").strip().upper()


@dataclass
class AttributionSettings:
    new_customer_model: str
    returning_customer_model: str
    cookie_window_days: int

    def model_for(self, is_new_customer: Optional[bool]) -> str:
        if is_new_customer is False:
            return self.returning_customer_model
        return self.new_customer_model


# ==================== Attribution models ====================

def touch_weights(touches: List[AttributionTouch], model: str, at: datetime,
                  half_life_days: Optional[int] = None) -> List[float]:
    """
    Credit weight per touch (oldest first), summing to 1.

    FIRST_CLICK and LAST_CLICK put all credit on one end; LINEAR spreads it
    evenly; TIME_DECAY halves a touch's weight every half-life; POSITION gives
    40% to each end and splits 20% over the middle.
    """
    count = len(touches)
    if count == 0:
        return []
    if count == 1:
        return [1.0]

    if model == AttributionModel.FIRST_CLICK.value:
        return [1.0] + [0.0] * (count - 1)

    if model == AttributionModel.LAST_CLICK.value:
        return [0.0] * (count - 1) + [1.0]

    if model == AttributionModel.LINEAR.value:
        return [1.0 / count] * count

    if model == AttributionModel.TIME_DECAY.value:
        half_life = half_life_days or settings.ATTRIBUTION_TIME_DECAY_HALF_LIFE_DAYS
        at_utc = as_utc(at)
        raw = []
        for touch in touches:
            age_days = max((at_utc - as_utc(touch.touched_at)).total_seconds() / 86400, 0.0)
            raw.append(math.pow(2, -age_days / half_life))
        total = sum(raw)
        return [w / total for w in raw]

    if model == AttributionModel.POSITION.value:
        if count == 2:
            return [0.5, 0.5]
        middle = (1.0 - 2 * POSITION_ENDPOINT_WEIGHT) / (count - 2)
        return [POSITION_ENDPOINT_WEIGHT] + [middle] * (count - 2) + [POSITION_ENDPOINT_WEIGHT]

    raise ValueError(f"Unknown attribution model {model!r}")


def pick_winner(touches: List[AttributionTouch], weights: List[float]) -> tuple:
    """
    Affiliate with the most credit, its representative touch, and per-affiliate credits.

    Ties go to the affiliate with the most recent touch.
    """
    credit: Dict[uuid.UUID, float] = defaultdict(float)
    latest_touch: Dict[uuid.UUID, AttributionTouch] = {}
    for touch, weight in zip(touches, weights):
        credit[touch.affiliate_id] += weight
        if weight > 0 or touch.affiliate_id not in latest_touch:
            latest_touch[touch.affiliate_id] = touch

    position = {t.id: i for i, t in enumerate(touches)}
    winner = max(credit, key=lambda a: (credit[a], position[latest_touch[a].id]))
    credits = [AffiliateCredit(affiliate_id=a, weight=round(w, 6)) for a, w in credit.items()]
    return winner, latest_touch[winner], credits


def confidence_level(credits: List[AffiliateCredit], winner: uuid.UUID) -> str:
    if len(credits) == 1:
        return "high"
    winner_weight = next(c.weight for c in credits if c.affiliate_id == winner)
    return "medium" if winner_weight >= 0.5 else "low"


class AttributionService:
    """Records touches and conversions, and attributes conversions to affiliates."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        serializable_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.serializable_factory = serializable_factory or serializable_session_factory

    async def get_settings(self, session: AsyncSession, tenant_id: uuid.UUID) -> AttributionSettings:
        config = (await session.execute(
            select(AttributionConfig).where(AttributionConfig.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if config is None:
            return AttributionSettings(
                new_customer_model=settings.ATTRIBUTION_NEW_CUSTOMER_MODEL,
                returning_customer_model=settings.ATTRIBUTION_RETURNING_CUSTOMER_MODEL,
                cookie_window_days=settings.ATTRIBUTION_COOKIE_WINDOW_DAYS,
            )
        return AttributionSettings(
            new_customer_model=config.new_customer_model,
            returning_customer_model=config.returning_customer_model,
            cookie_window_days=config.cookie_window_days,
        )

    async def resolve_referral_code(self, session: AsyncSession, tenant_id: uuid.UUID,
                                    code: str) -> ReferralCode:
        """Active code whose affiliate is ACTIVE, or ReferralCodeNotFoundError."""
        normalized = normalize_ref_code(code)
        result = await session.execute(
            select(ReferralCode)
            .join(Affiliate, Affiliate.id == ReferralCode.affiliate_id)
            .where(
                and_(
                    ReferralCode.tenant_id == tenant_id,
                    ReferralCode.code == normalized,
                    ReferralCode.is_active.is_(True),
                    Affiliate.status == AffiliateStatus.ACTIVE.value,
                )
            )
        )
        referral_code = result.scalar_one_or_none()
        if referral_code is None:
            raise ReferralCodeNotFoundError(f"Referral code {normalized!r} is not active for tenant {tenant_id}")
        return referral_code

    async def find_referral_code(self, session: AsyncSession, tenant_id: uuid.UUID,
                                 code: str) -> ReferralCode:
        """Any code issued in the tenant, active or not, or ReferralCodeNotFoundError."""
        normalized = normalize_ref_code(code)
        result = await session.execute(
            select(ReferralCode).where(
                and_(ReferralCode.tenant_id == tenant_id, ReferralCode.code == normalized)
            )
        )
        referral_code = result.scalar_one_or_none()
        if referral_code is None:
            raise ReferralCodeNotFoundError(f"Referral code {normalized!r} does not exist in tenant {tenant_id}")
        return referral_code

    async def record_touch(self, referral_code: str, visitor: VisitorContext,
                           touched_at: Optional[datetime] = None) -> uuid.UUID:
        """
        Append a touch for the visitor against an existing referral code.

        Touches are captured even for inactive codes and non-active
        affiliates; resolution is what ignores them.
        """
        async with get_db_session(self.session_factory) as session:
            code = await self.find_referral_code(session, visitor.tenant_id, referral_code)
            if not code.is_active:
                logger.info(f"Touch recorded against inactive code {code.code}; it will not attribute")
            touch = AttributionTouch(
                tenant_id=visitor.tenant_id,
                affiliate_id=code.affiliate_id,
                referral_code_id=code.id,
                ref_code=code.code,
                visitor_fingerprint=visitor.visitor_fingerprint,
                cookie_id=visitor.cookie_id,
                ip_address_hash=visitor.ip_address_hash,
                user_agent=visitor.user_agent,
                landing_page=visitor.landing_page,
                referrer_url=visitor.referrer_url,
                utm_source=visitor.utm_source,
                utm_medium=visitor.utm_medium,
                utm_campaign=visitor.utm_campaign,
                sub_id_1=visitor.sub_id_1,
                sub_id_2=visitor.sub_id_2,
                sub_id_3=visitor.sub_id_3,
                touch_type=visitor.touch_type.value,
                touched_at=touched_at or utcnow(),
            )
            session.add(touch)
            await session.flush()
            touch_id = touch.id

        logger.info(f"Recorded {visitor.touch_type.value} touch {touch_id} for code {code.code}")
        return touch_id

    def _visitor_filter(self, visitor: VisitorContext):
        conditions = [AttributionTouch.visitor_fingerprint == visitor.visitor_fingerprint]
        if visitor.cookie_id:
            conditions.append(AttributionTouch.cookie_id == visitor.cookie_id)
        return and_(AttributionTouch.tenant_id == visitor.tenant_id, or_(*conditions))

    @staticmethod
    def _eligible_touch_filter():
        """Touch came in on a code that is still active, for an affiliate that is still ACTIVE."""
        eligible_codes = (
            select(ReferralCode.id)
            .join(Affiliate, Affiliate.id == ReferralCode.affiliate_id)
            .where(
                and_(
                    ReferralCode.is_active.is_(True),
                    Affiliate.status == AffiliateStatus.ACTIVE.value,
                )
            )
        )
        return AttributionTouch.referral_code_id.in_(eligible_codes)

    async def record_conversion(self, visitor: VisitorContext,
                                converted_at: Optional[datetime] = None) -> Optional[AttributionTouch]:
        """
        Mark the visitor's most recent unconverted, still eligible touch as converted.

        Returns None when the visitor has no unconverted touch. Replaying the
        same conversion (same visitor and timestamp) returns the touch it
        already converted instead of consuming another one.
        """
        converted_at = converted_at or utcnow()

        async def _work(session: AsyncSession) -> Optional[AttributionTouch]:
            already = (await session.execute(
                select(AttributionTouch)
                .where(and_(self._visitor_filter(visitor), AttributionTouch.converted_at == converted_at))
                .limit(1)
            )).scalar_one_or_none()
            if already is not None:
                return already

            touch = (await session.execute(
                select(AttributionTouch)
                .where(
                    and_(
                        self._visitor_filter(visitor),
                        self._eligible_touch_filter(),
                        AttributionTouch.converted_at.is_(None),
                    )
                )
                .order_by(AttributionTouch.touched_at.desc())
                .limit(1)
            )).scalar_one_or_none()
            if touch is None:
                return None

            result = await session.execute(
                update(AttributionTouch)
                .where(and_(AttributionTouch.id == touch.id, AttributionTouch.converted_at.is_(None)))
                .values(converted_at=converted_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            touch.converted_at = converted_at
            return touch

        touch = await run_serializable(_work, self.serializable_factory, description="record conversion")
        if touch is None:
            logger.info(f"No unconverted touch for visitor in tenant {visitor.tenant_id}; nothing to attribute")
        return touch

    async def resolve_attribution(
        self,
        visitor: VisitorContext,
        is_new_customer: Optional[bool] = None,
        at: Optional[datetime] = None,
    ) -> Optional[AttributionResult]:
        """Decide which affiliate earns the visitor's conversion, or None if no touch qualifies."""
        at = at or utcnow()
        async with self.session_factory() as session:
            config = await self.get_settings(session, visitor.tenant_id)
            window_start = at - timedelta(days=config.cookie_window_days)
            result = await session.execute(
                select(AttributionTouch)
                .where(
                    and_(
                        self._visitor_filter(visitor),
                        self._eligible_touch_filter(),
                        AttributionTouch.converted_at.is_(None),
                        AttributionTouch.touched_at >= window_start,
                        AttributionTouch.touched_at <= at,
                    )
                )
                .order_by(AttributionTouch.touched_at.asc())
            )
            touches = list(result.scalars().all())

        if not touches:
            return None

        model = config.model_for(is_new_customer)
        weights = touch_weights(touches, model, at)
        affiliate_id, touch, credits = pick_winner(touches, weights)

        return AttributionResult(
            affiliate_id=affiliate_id,
            referral_code_id=touch.referral_code_id,
            ref_code=touch.ref_code,
            touch_id=touch.id,
            model=model,
            confidence=confidence_level(credits, affiliate_id),
            touch_count=len(touches),
            credits=credits,
        )
