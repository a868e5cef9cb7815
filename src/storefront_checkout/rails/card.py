"""
Card rail — hosted card processor via a payment intent.

The intent is confirmed by the user in the processor's hosted form; the
processor's webhook settles the order, so the submission is marked
``awaiting_external``.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Optional

from storefront_checkout.errors import RailError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import PaymentSubmission
from storefront_checkout.rails.base import PaymentRail, classify_rail_failure
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

CARD_MINIMUM = Decimal("0.50")

ConfirmHook = Callable[[dict[str, Any]], Awaitable[None]]


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentsAPI:
    """Card processor proxy on the storefront back end."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def create_payment_intent(
        self,
        amount: Decimal,
        batch_order_id: str,
        order_number: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        data = await self._http.post("/create-payment-intent", {
            "amount": to_cents(amount),
            "currency": "usd",
            "batchOrderId": batch_order_id,
            "orderNumber": order_number,
            "metadata": metadata or {},
        })
        if not data.get("paymentIntentId") and not data.get("id"):
            raise RailError(RailError.TRANSIENT, "Payment intent response has no id")
        return data


class CardRail(PaymentRail):
    kind = "card"

    def __init__(
        self,
        payments: PaymentsAPI,
        minimum: Decimal = CARD_MINIMUM,
        confirm: Optional[ConfirmHook] = None,
    ):
        self._payments = payments
        self._minimum = minimum
        self._confirm = confirm

    async def submit(self, batch_order: BatchOrder, method: Any, payer: Optional[str]) -> PaymentSubmission:
        amount = max(batch_order.total_payment_amount, self._minimum)
        try:
            intent = await self._payments.create_payment_intent(
                amount,
                batch_order.batch_order_id,
                batch_order.order_number,
                {"walletAddress": payer or "stripe"},
            )
            if self._confirm is not None:
                await self._confirm(intent)
        except RailError:
            raise
        except Exception as e:
            raise classify_rail_failure(e) from e

        intent_id = intent.get("paymentIntentId") or intent["id"]
        logger.info("Payment intent %s created for batch %s (%s USD)", intent_id, batch_order.batch_order_id, amount)
        return PaymentSubmission(
            reference=intent_id,
            rail=self.kind,
            amount=amount,
            asset="USD",
            recipient=batch_order.receiver_wallet,
            payer=payer,
            awaiting_external=True,
            client_secret=intent.get("clientSecret"),
        )
