"""
Payment rail dispatcher — one strategy per payment-method kind.
"""

import logging
from typing import Any, Optional

from storefront_checkout.errors import RailError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import PAYMENT_KINDS, PaymentSubmission
from storefront_checkout.rails.base import PaymentRail

logger = logging.getLogger(__name__)


class PaymentRailDispatcher:
    def __init__(self, rails: list[PaymentRail]):
        registry = {rail.kind: rail for rail in rails}
        missing = [kind for kind in PAYMENT_KINDS if kind not in registry]
        if missing:
            raise ValueError(f"No payment rail registered for: {', '.join(missing)}")
        unknown = [kind for kind in registry if kind not in PAYMENT_KINDS]
        if unknown:
            raise ValueError(f"Unknown payment rail kind(s): {', '.join(unknown)}")
        self._rails = registry

    async def submit_payment(
        self,
        batch_order: BatchOrder,
        method: Any,
        payer: Optional[str],
    ) -> PaymentSubmission:
        if batch_order.total_payment_amount <= 0:
            raise RailError(RailError.TRANSIENT, f"Nothing to pay for batch {batch_order.batch_order_id}")
        rail = self._rails[method.kind]
        logger.info(
            "Submitting %s payment of %s for batch %s",
            method.kind, batch_order.total_payment_amount, batch_order.batch_order_id,
        )
        return await rail.submit(batch_order, method, payer)
