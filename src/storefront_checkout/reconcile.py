"""
Background reconciliation of batch orders left awaiting payment (for example
after a confirmation timeout). Each order's recorded reference is verified
once and the order confirmed or failed through the ledger's guarded
transitions, so this can run alongside live checkouts.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from storefront_checkout.errors import LedgerError, TransportError
from storefront_checkout.ledger import OrderLedgerClient
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.settlement import ExpectedSettlement

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    pending: int = 0
    errors: list[str] = field(default_factory=list)


class Reconciler:
    def __init__(self, ledger: OrderLedgerClient, batch_size: int = 50):
        self._ledger = ledger
        self._batch_size = batch_size

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        orders = await self._ledger.backend.list_pending(self._batch_size)
        logger.info("Reconciling %d pending batch order(s)", len(orders))
        for order in orders:
            await self._reconcile(order, report)
        logger.info(
            "Reconciliation done: %d confirmed, %d failed, %d still pending",
            report.confirmed, report.failed, report.pending,
        )
        return report

    async def _reconcile(self, order: BatchOrder, report: SweepReport) -> None:
        if not order.transaction_ref:
            return
        report.checked += 1
        amount = order.payment_amount if order.payment_amount is not None else order.total_payment_amount
        expected = ExpectedSettlement(amount=amount, recipient=order.receiver_wallet)
        try:
            result = await self._ledger.verify(order.transaction_ref, expected)
            if result.confirmed:
                await self._ledger.finalize(order.batch_order_id)
                report.confirmed += 1
            elif result.failed or result.mismatch:
                reason = result.error or "Transaction failed"
                if await self._ledger.mark_failed(order.batch_order_id, reason):
                    report.failed += 1
            else:
                report.pending += 1
        except (LedgerError, TransportError, asyncio.TimeoutError) as e:
            logger.error("Reconciling batch order %s failed: %s", order.batch_order_id, e)
            report.errors.append(order.batch_order_id)
