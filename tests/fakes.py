"""In-process fakes for the checkout unit tests."""

import asyncio
from decimal import Decimal
from typing import Any, Optional

from storefront_checkout.config import CheckoutConfig, RailTiming
from storefront_checkout.coupons import DiscountCalculator
from storefront_checkout.eligibility import AccessResult, EligibilityVerifier
from storefront_checkout.errors import CouponError
from storefront_checkout.ledger import MemoryLedger, OrderLedgerClient
from storefront_checkout.models.cart import CartLine, EligibilityRules, ShippingInfo
from storefront_checkout.models.coupon import Coupon
from storefront_checkout.models.payment import PAYMENT_KINDS, PaymentSubmission
from storefront_checkout.orchestrator import CheckoutOrchestrator
from storefront_checkout.rails.base import PaymentRail
from storefront_checkout.rails.card import CardRail
from storefront_checkout.rails.dispatcher import PaymentRailDispatcher
from storefront_checkout.rails.native import NativeTransferRail
from storefront_checkout.settlement import SettlementMonitor

BUYER = "BuyerWa11etAddress1111111111111111111111111"
RECEIVER = "MerchantReceiverWallet1111111111111111111111"

SHIPPING = ShippingInfo(
    first_name="Ada",
    last_name="Lovelace",
    address="12 Analytical St",
    city="London",
    zip="N1 9GU",
    country="GB",
    email="ada@example.com",
)


def make_line(item_id: str = "item-1", price: str = "10.00", rules: Optional[dict] = None, **kwargs: Any) -> CartLine:
    return CartLine(
        item_id=item_id,
        item_name=kwargs.pop("item_name", f"Product {item_id}"),
        unit_price=Decimal(price),
        eligibility_rules=EligibilityRules.model_validate(rules) if rules else None,
        **kwargs,
    )


class FakeChecker:
    """Access checker answering from a ``rule value -> bool`` table."""

    def __init__(self, allowed: Optional[dict[str, bool]] = None, error: Optional[Exception] = None):
        self.allowed = allowed or {}
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def verify_access(self, wallet_address, rule):
        self.calls.append((wallet_address, rule.value))
        if self.error is not None:
            raise self.error
        if self.allowed.get(rule.value, False):
            return AccessResult(is_valid=True)
        return AccessResult(is_valid=False, error=f"Requires {rule.value}")


class FakeCoupons:
    def __init__(self, coupons: Optional[dict[str, Coupon]] = None):
        self.coupons = coupons or {}
        self.calls: list[str] = []

    async def validate_coupon(self, code, wallet_address, collection_ids):
        self.calls.append(code)
        if code not in self.coupons:
            raise CouponError("Invalid coupon code")
        return self.coupons[code]


class FakeWallet:
    """Signs instantly. Successful transfers are recorded on the ledger's view
    of the chain unless ``settle`` is off."""

    def __init__(self, ledger: Optional[MemoryLedger] = None, address: str = BUYER, settle: bool = True):
        self.address = address
        self.ledger = ledger
        self.settle = settle
        self.settle_amount: Optional[Decimal] = None
        self.settle_error: Optional[str] = None
        self.failures: list[Exception] = []
        self.transfers: list[tuple[str, Decimal, Optional[str]]] = []
        self.started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    async def transfer(self, recipient, amount, mint=None):
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.failures:
            raise self.failures.pop(0)
        self.transfers.append((recipient, amount, mint))
        signature = f"sig{len(self.transfers)}"
        if self.ledger is not None and self.settle:
            settled = self.settle_amount if self.settle_amount is not None else amount
            self.ledger.record_settlement(signature, settled, recipient, buyer=self.address, error=self.settle_error)
        return signature

    async def sign_and_send(self, transaction, chain="solana"):
        self.started.set()
        if self.failures:
            raise self.failures.pop(0)
        return f"tx-{transaction[:8]}"


class FakePrices:
    def __init__(self, prices: Optional[dict[str, Decimal]] = None):
        self.prices = prices or {"SOL": Decimal("100"), "USDC": Decimal("1")}

    async def usd_price(self, symbol):
        return self.prices[symbol]


class FakePayments:
    """Card processor whose webhook settles every intent immediately."""

    def __init__(self, ledger: Optional[MemoryLedger] = None):
        self.ledger = ledger
        self.intents: list[dict[str, Any]] = []

    async def create_payment_intent(self, amount, batch_order_id, order_number=None, metadata=None):
        intent_id = f"pi_{len(self.intents) + 1}"
        self.intents.append({"amount": amount, "batch_order_id": batch_order_id})
        if self.ledger is not None:
            self.ledger.record_settlement(intent_id, amount, RECEIVER)
        return {"paymentIntentId": intent_id, "clientSecret": f"{intent_id}_secret"}


class StubRail(PaymentRail):
    def __init__(self, kind: str):
        self.kind = kind
        self.submitted: list[str] = []

    async def submit(self, batch_order, method, payer):
        self.submitted.append(batch_order.batch_order_id)
        return PaymentSubmission(
            reference=f"{self.kind}-ref",
            rail=self.kind,
            amount=batch_order.total_payment_amount,
            asset="USDC",
            recipient=batch_order.receiver_wallet,
            payer=payer,
        )


def fast_config(**overrides: Any) -> CheckoutConfig:
    timings = {
        kind: RailTiming(poll_interval=0.01, max_attempts=3, timeout=1.0, submit_timeout=5.0)
        for kind in PAYMENT_KINDS
    }
    values = dict(
        rail_timings=timings,
        rail_retry_delay=0,
        verification_timeout=5.0,
        ledger_timeout=5.0,
        max_rail_retries=2,
    )
    values.update(overrides)
    return CheckoutConfig(**values)


class Harness:
    """An orchestrator wired to in-process collaborators."""

    def __init__(self, config: Optional[CheckoutConfig] = None, ledger: Optional[MemoryLedger] = None):
        self.config = config or fast_config()
        self.ledger = ledger or MemoryLedger(receiver_wallet=RECEIVER)
        self.checker = FakeChecker()
        self.coupons = FakeCoupons()
        self.wallet = FakeWallet(self.ledger)
        self.payments = FakePayments(self.ledger)
        self.swap = StubRail("spl_token")
        self.bridge = StubRail("cross_chain")
        self.cleared: list[str] = []
        self.ledger_client = OrderLedgerClient(self.ledger, create_retries=2, timeout=5.0, backoff=0)
        self.monitor = SettlementMonitor(self.ledger_client, self.config.timing_for)
        self.orchestrator = CheckoutOrchestrator(
            EligibilityVerifier(self.checker),
            DiscountCalculator(self.coupons, self.checker),
            self.ledger_client,
            PaymentRailDispatcher([
                CardRail(self.payments),
                NativeTransferRail(self.wallet, FakePrices()),
                self.swap,
                self.bridge,
            ]),
            self.monitor,
            config=self.config,
            on_cart_cleared=lambda session: self.cleared.append(session.session_id),
        )

    def add_coupon(self, code: str, discount_type: str, value: str, **kwargs: Any) -> None:
        self.coupons.coupons[code] = Coupon(
            code=code, discount_type=discount_type, discount_value=Decimal(value), **kwargs,
        )
