"""Settlement monitor, settlement feed and background reconciliation."""

import asyncio
from decimal import Decimal

import pytest

from fakes import BUYER, RECEIVER, SHIPPING, make_line
from storefront_checkout.config import RailTiming
from storefront_checkout.errors import SettlementInProgress, TransportError
from storefront_checkout.ledger import MemoryLedger, OrderLedgerClient
from storefront_checkout.models.order import BatchOrderStatus
from storefront_checkout.models.settlement import ExpectedSettlement, SettlementNotice
from storefront_checkout.reconcile import Reconciler
from storefront_checkout.settlement import SettlementMonitor
from storefront_checkout.transport.envelope import parse_settlement_notice
from storefront_checkout.transport.events import SettlementFeed

EXPECTED = ExpectedSettlement(amount=Decimal("1.5"), buyer=BUYER, recipient=RECEIVER)


def _timing(**kwargs) -> RailTiming:
    values = dict(poll_interval=0.01, max_attempts=5, timeout=2.0)
    values.update(kwargs)
    return RailTiming(**values)


class CountingLedger(MemoryLedger):
    """Settles a reference after a number of verification calls."""

    def __init__(self, settle_after=None, errors=0):
        super().__init__(receiver_wallet=RECEIVER)
        self.settle_after = settle_after
        self.errors = errors
        self.verify_calls = 0

    async def verify_transaction(self, reference, expected):
        self.verify_calls += 1
        if self.errors:
            self.errors -= 1
            raise TransportError("HTTP 502", status_code=502, retryable=True)
        if self.settle_after is not None and self.verify_calls >= self.settle_after:
            self.record_settlement(reference, expected.amount, expected.recipient, buyer=expected.buyer)
        return await super().verify_transaction(reference, expected)


def _monitor(ledger, feed=None, **timing) -> SettlementMonitor:
    return SettlementMonitor(OrderLedgerClient(ledger, timeout=1.0), lambda rail: _timing(**timing), feed=feed)


class TestSettlementMonitor:
    @pytest.mark.asyncio
    async def test_confirms_after_pending_polls(self):
        ledger = CountingLedger(settle_after=3)
        result = await _monitor(ledger).watch("sig", EXPECTED, "batch-1", "default")
        assert result.confirmed
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_times_out_after_max_attempts(self):
        ledger = CountingLedger()
        result = await _monitor(ledger, max_attempts=4).watch("sig", EXPECTED, "batch-1", "default")
        assert result.status == "timed_out"
        assert ledger.verify_calls == 4

    @pytest.mark.asyncio
    async def test_times_out_at_deadline(self):
        ledger = CountingLedger()
        result = await _monitor(ledger, max_attempts=1000, poll_interval=0.05, timeout=0.2).watch(
            "sig", EXPECTED, "batch-1", "default",
        )
        assert result.status == "timed_out"
        assert ledger.verify_calls < 10

    @pytest.mark.asyncio
    async def test_mismatch_is_a_failure(self):
        ledger = CountingLedger()
        ledger.record_settlement("sig", Decimal("0.5"), RECEIVER, buyer=BUYER)
        result = await _monitor(ledger).watch("sig", EXPECTED, "batch-1", "default")
        assert result.status == "failed"
        assert result.mismatch
        assert "Amount mismatch" in result.reason

    @pytest.mark.asyncio
    async def test_onchain_failure(self):
        ledger = CountingLedger()
        ledger.record_settlement("sig", Decimal("1.5"), RECEIVER, buyer=BUYER, error="custom program error")
        result = await _monitor(ledger).watch("sig", EXPECTED, "batch-1", "default")
        assert result.status == "failed"
        assert not result.mismatch

    @pytest.mark.asyncio
    async def test_verification_errors_are_tolerated(self):
        ledger = CountingLedger(settle_after=1, errors=2)
        result = await _monitor(ledger).watch("sig", EXPECTED, "batch-1", "default")
        assert result.confirmed
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_same_reference_is_coalesced(self):
        ledger = CountingLedger(settle_after=4)
        monitor = _monitor(ledger)
        first, second = await asyncio.gather(
            monitor.watch("sig", EXPECTED, "batch-1", "default"),
            monitor.watch("sig", EXPECTED, "batch-1", "default"),
        )
        assert first == second
        assert ledger.verify_calls == 4
        assert monitor.watching("batch-1") is None

    @pytest.mark.asyncio
    async def test_different_reference_for_same_batch_is_rejected(self):
        ledger = CountingLedger(settle_after=3)
        monitor = _monitor(ledger)
        running = asyncio.ensure_future(monitor.watch("sig", EXPECTED, "batch-1", "default"))
        await asyncio.sleep(0)
        assert monitor.watching("batch-1") == "sig"

        with pytest.raises(SettlementInProgress):
            await monitor.watch("other", EXPECTED, "batch-1", "default")
        assert (await running).confirmed

    @pytest.mark.asyncio
    async def test_feed_notice_cuts_the_wait_short(self):
        ledger = CountingLedger()
        feed = SettlementFeed("https://store.test")
        monitor = _monitor(ledger, feed=feed, poll_interval=30.0, timeout=60.0)
        watch = asyncio.ensure_future(monitor.watch("pi_1", EXPECTED, "batch-1", "card"))
        await asyncio.sleep(0.05)
        assert ledger.verify_calls == 1

        ledger.record_settlement("pi_1", Decimal("1.5"), RECEIVER, buyer=BUYER)
        feed.publish(SettlementNotice(reference="pi_1", batch_order_id="batch-1", status="succeeded"))
        result = await asyncio.wait_for(watch, timeout=2)

        assert result.confirmed
        assert ledger.verify_calls == 2


class TestSettlementFeed:
    @pytest.mark.asyncio
    async def test_wait_for_times_out_quietly(self):
        feed = SettlementFeed("https://store.test")
        assert await feed.wait_for("sig", 0.01) is None

    @pytest.mark.asyncio
    async def test_listeners_receive_notices(self):
        feed = SettlementFeed("https://store.test")
        received = []
        remove = feed.add_listener(received.append)
        notice = SettlementNotice(reference="sig", status="confirmed")
        feed.publish(notice)
        remove()
        feed.publish(notice)
        assert received == [notice]

    def test_parse_settlement_notice(self):
        wrapped = {"payload": {"data": {"transactionSignature": "sig", "batchOrderId": "b-1", "status": "ok"}}}
        notice = parse_settlement_notice(wrapped)
        assert notice.reference == "sig"
        assert notice.batch_order_id == "b-1"

        assert parse_settlement_notice({"paymentIntentId": "pi_9"}).reference == "pi_9"
        assert parse_settlement_notice({"status": "ok"}) is None
        assert parse_settlement_notice("garbage") is None


class TestReconciler:
    @pytest.mark.asyncio
    async def test_sweep_resolves_pending_orders(self, ledger):
        client = OrderLedgerClient(ledger)
        orders = []
        for token in ("t1", "t2", "t3"):
            order = await ledger.create_batch_order(token, [make_line(token)], SHIPPING, {}, BUYER)
            await ledger.update_order_transaction(order.batch_order_id, f"sig-{token}", Decimal("0.1"))
            orders.append(order)
        ledger.record_settlement("sig-t1", Decimal("0.1"), RECEIVER, buyer=BUYER)
        ledger.record_settlement("sig-t2", Decimal("0.1"), RECEIVER, buyer=BUYER, error="failed")

        report = await Reconciler(client).sweep()

        assert (report.checked, report.confirmed, report.failed, report.pending) == (3, 1, 1, 1)
        statuses = [(await ledger.get_batch_order(o.batch_order_id)).status for o in orders]
        assert statuses == [BatchOrderStatus.CONFIRMED, BatchOrderStatus.FAILED, BatchOrderStatus.AWAITING_PAYMENT]
