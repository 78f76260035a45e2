"""
Payment notification handling.

Entry point for the payment event source: resolves which affiliate a
successful payment belongs to, records the conversion against the
visitor's touch, and hands the payment to the commission engine. Refunds
go to the engine's refund path.
"""
import logging
from typing import Optional, List

from app.core.exceptions import ReferralCodeNotFoundError
from app.schemas.commission import PaymentRefunded, PaymentSucceeded, RefundOutcome
from app.models.commission import CommissionEvent
from app.services.attribution_service import AttributionService, normalize_ref_code
from app.services.commission_engine import CommissionEngine

logger = logging.getLogger(__name__)


class PaymentEventService:
    """Routes payment succeeded/refunded notifications into the engine."""

    def __init__(self, engine: Optional[CommissionEngine] = None,
                 attribution: Optional[AttributionService] = None):
        self.engine = engine or CommissionEngine()
        self.attribution = attribution or AttributionService(
            self.engine.session_factory, self.engine.serializable_factory
        )

    async def handle_payment_succeeded(self, payment: PaymentSucceeded) -> Optional[CommissionEvent]:
        """
        Record the commission for a successful payment.

        Returns None when no affiliate can be attributed. Replays of the same
        source event id return the original event.
        """
        existing = await self.engine.get_event_by_source(payment.tenant_id, payment.source_event_id)
        if existing is not None:
            logger.info(f"Payment {payment.source_event_id} already processed")
            return existing

        affiliate_id = payment.affiliate_id
        ref_code = normalize_ref_code(payment.ref_code) if payment.ref_code else None
        touch_id = None

        if affiliate_id is None and ref_code:
            async with self.engine.session_factory() as session:
                try:
                    code = await self.attribution.resolve_referral_code(session, payment.tenant_id, ref_code)
                    affiliate_id = code.affiliate_id
                except ReferralCodeNotFoundError:
                    logger.warning(f"Payment {payment.source_event_id} carries unknown referral code {ref_code}")

        if affiliate_id is None and payment.visitor is not None:
            result = await self.attribution.resolve_attribution(
                payment.visitor, is_new_customer=payment.is_new_customer, at=payment.occurred_at,
            )
            if result is not None:
                affiliate_id = result.affiliate_id
                ref_code = result.ref_code
                touch_id = result.touch_id
                logger.info(
                    f"Payment {payment.source_event_id} attributed to {affiliate_id} "
                    f"via {result.model.value} ({result.confidence} confidence)"
                )

        if affiliate_id is None:
            logger.info(f"Payment {payment.source_event_id} has no attributable affiliate")
            return None

        if payment.visitor is not None and payment.is_first_payment:
            touch = await self.attribution.record_conversion(payment.visitor, payment.occurred_at)
            if touch is not None and touch_id is None and touch.affiliate_id == affiliate_id:
                touch_id = touch.id

        return await self.engine.compute_and_record_commission(
            tenant_id=payment.tenant_id,
            affiliate_id=affiliate_id,
            source_event_id=payment.source_event_id,
            event_amount_cents=payment.amount_cents,
            is_first_payment=payment.is_first_payment,
            occurred_at=payment.occurred_at,
            recurring_cycle=payment.recurring_cycle,
            subscription_id=payment.subscription_id,
            source_object_id=payment.source_object_id,
            ref_code=ref_code,
            touch_id=touch_id,
            ip_address_hash=payment.visitor.ip_address_hash if payment.visitor is not None else None,
        )

    async def handle_payment_refunded(self, refund: PaymentRefunded) -> List[RefundOutcome]:
        return await self.engine.clawback_by_source_object(
            refund.tenant_id, refund.source_object_id, refund.reason
        )
