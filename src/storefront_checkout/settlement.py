"""
Settlement monitor — polls the ledger's transaction verification until a
payment reference is final or its rail's polling budget runs out.
"""

import asyncio
import logging
from typing import Callable, Optional

from storefront_checkout.config import RailTiming
from storefront_checkout.errors import LedgerError, SettlementInProgress, TransportError
from storefront_checkout.ledger import OrderLedgerClient
from storefront_checkout.models.settlement import ConfirmationResult, ExpectedSettlement
from storefront_checkout.transport.events import SettlementFeed

logger = logging.getLogger(__name__)


class SettlementMonitor:
    def __init__(
        self,
        ledger: OrderLedgerClient,
        timing_for: Callable[[str], RailTiming],
        feed: Optional[SettlementFeed] = None,
    ):
        self._ledger = ledger
        self._timing_for = timing_for
        self._feed = feed
        self._in_flight: dict[str, tuple[str, asyncio.Task]] = {}

    def watching(self, batch_order_id: str) -> Optional[str]:
        """Reference currently being watched for ``batch_order_id``, if any."""
        entry = self._in_flight.get(batch_order_id)
        if entry is None or entry[1].done():
            return None
        return entry[0]

    async def watch(
        self,
        reference: str,
        expected: ExpectedSettlement,
        batch_order_id: str,
        rail: str,
    ) -> ConfirmationResult:
        """Wait for ``reference`` to settle.

        A second watch for the same batch order and reference joins the running
        one; a different reference for a batch already being watched raises
        ``SettlementInProgress``.
        """
        entry = self._in_flight.get(batch_order_id)
        if entry is not None and not entry[1].done():
            running_reference, task = entry
            if running_reference != reference:
                raise SettlementInProgress(batch_order_id)
            logger.debug("Joining in-flight watch for %s", reference)
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._poll(reference, expected, rail))
        self._in_flight[batch_order_id] = (reference, task)

        def _forget(_task: asyncio.Task) -> None:
            if self._in_flight.get(batch_order_id, (None, None))[1] is _task:
                del self._in_flight[batch_order_id]

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _pause(self, reference: str, delay: float) -> None:
        if delay <= 0:
            return
        if self._feed is not None:
            notice = await self._feed.wait_for(reference, delay)
            if notice is not None:
                logger.info("Settlement notice for %s (%s), re-checking", reference, notice.status or "update")
            return
        await asyncio.sleep(delay)

    async def _poll(self, reference: str, expected: ExpectedSettlement, rail: str) -> ConfirmationResult:
        timing = self._timing_for(rail)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timing.timeout
        await self._pause(reference, min(timing.initial_delay, timing.timeout))

        attempts = 0
        last_error: Optional[str] = None
        while attempts < timing.max_attempts:
            attempts += 1
            try:
                result = await self._ledger.verify(reference, expected)
            except (TransportError, LedgerError, asyncio.TimeoutError) as e:
                # Verification errors never settle a payment either way.
                logger.warning("Verification of %s failed (attempt %d): %s", reference, attempts, e)
                last_error = str(e) or "verification timed out"
                result = None

            if result is not None:
                if result.confirmed:
                    logger.info("Transaction %s confirmed after %d check(s)", reference, attempts)
                    return ConfirmationResult(status="confirmed", reference=reference, attempts=attempts)
                if result.mismatch:
                    logger.error("Transaction %s does not match its order: %s", reference, result.error)
                    return ConfirmationResult(
                        status="failed", reference=reference, reason=result.error,
                        mismatch=True, attempts=attempts,
                    )
                if result.failed:
                    logger.warning("Transaction %s failed: %s", reference, result.error)
                    return ConfirmationResult(
                        status="failed", reference=reference, reason=result.error, attempts=attempts,
                    )
                last_error = result.error

            remaining = deadline - loop.time()
            if remaining <= 0 or attempts >= timing.max_attempts:
                break
            await self._pause(reference, min(timing.poll_interval, remaining))

        logger.warning("Transaction %s still unsettled after %d check(s)", reference, attempts)
        return ConfirmationResult(
            status="timed_out", reference=reference,
            reason=last_error or "Transaction confirmation timeout", attempts=attempts,
        )
