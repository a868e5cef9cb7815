"""
Checkout / AsyncCheckout — main SDK clients.
"""

import asyncio
from decimal import Decimal
from typing import Any, Optional

from storefront_checkout.config import CheckoutConfig, load_config
from storefront_checkout.coupons import CouponsAPI, DiscountCalculator
from storefront_checkout.eligibility import CatalogAPI, EligibilityVerifier
from storefront_checkout.ledger import LedgerAPI, LedgerBackend, OrderLedgerClient
from storefront_checkout.models.cart import CartLine, ShippingInfo
from storefront_checkout.models.coupon import DiscountResult
from storefront_checkout.models.order import BatchOrder, CheckoutSession, OrderProgress
from storefront_checkout.orchestrator import CartClearedHook, CheckoutOrchestrator
from storefront_checkout.rails.base import WalletSigner, WatchOnlyWallet
from storefront_checkout.rails.bridge import BridgeAPI, BridgeRail
from storefront_checkout.rails.card import CardRail, ConfirmHook, PaymentsAPI
from storefront_checkout.rails.dispatcher import PaymentRailDispatcher
from storefront_checkout.rails.native import NativeTransferRail, PriceFeed
from storefront_checkout.rails.swap import SwapAPI, SwapRail
from storefront_checkout.reconcile import Reconciler, SweepReport
from storefront_checkout.settlement import SettlementMonitor
from storefront_checkout.transport.events import SettlementFeed
from storefront_checkout.transport.http import HttpClient


class AsyncCheckout:
    """Async checkout client (primary)."""

    def __init__(
        self,
        config: Optional[CheckoutConfig] = None,
        wallet: Optional[WalletSigner] = None,
        ledger: Optional[LedgerBackend] = None,
        on_cart_cleared: Optional[CartClearedHook] = None,
        card_confirm: Optional[ConfirmHook] = None,
        transport: Optional[Any] = None,
    ):
        self.config = config or load_config()
        cfg = self.config

        self.http = HttpClient(cfg.base_url, cfg.access_token, cfg.api_prefix, cfg.http_timeout, transport)
        self._external = [
            HttpClient(url, api_prefix="", timeout=cfg.http_timeout, transport=transport)
            for url in (cfg.price_feed_url, cfg.swap_aggregator_url, cfg.bridge_url)
        ]
        price_http, swap_http, bridge_http = self._external

        self.catalog = CatalogAPI(self.http)
        self.coupons = CouponsAPI(self.http)
        self.payments = PaymentsAPI(self.http)
        self.ledger = OrderLedgerClient(
            ledger or LedgerAPI(self.http),
            create_retries=cfg.ledger_create_retries,
            timeout=cfg.ledger_timeout,
        )
        self.wallet = wallet or WatchOnlyWallet()
        self.feed = SettlementFeed(cfg.base_url, cfg.access_token)

        self.verifier = EligibilityVerifier(self.catalog, ttl_s=cfg.eligibility_ttl)
        self.discounts = DiscountCalculator(self.coupons, self.catalog)
        self.dispatcher = PaymentRailDispatcher([
            CardRail(self.payments, minimum=cfg.card_minimum, confirm=card_confirm),
            NativeTransferRail(self.wallet, PriceFeed(price_http, cfg.merchant_token_price_id)),
            SwapRail(self.wallet, SwapAPI(swap_http), quote_ttl=cfg.quote_ttl, slippage_bps=cfg.swap_slippage_bps),
            BridgeRail(self.wallet, BridgeAPI(bridge_http)),
        ])
        self.monitor = SettlementMonitor(self.ledger, cfg.timing_for, feed=self.feed)
        self.orchestrator = CheckoutOrchestrator(
            self.verifier,
            self.discounts,
            self.ledger,
            self.dispatcher,
            self.monitor,
            config=cfg,
            on_cart_cleared=on_cart_cleared,
        )
        self.reconciler = Reconciler(self.ledger)

    async def connect_feed(self) -> None:
        """Subscribe to pushed settlement notices (optional)."""
        await self.feed.connect()

    async def close(self) -> None:
        await self.feed.disconnect()
        for client in [self.http, *self._external]:
            await client.close()

    async def start_checkout(
        self,
        cart: list[CartLine],
        shipping: ShippingInfo,
        payment_method: Any,
        coupon_code: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> CheckoutSession:
        address = wallet_address or self.wallet.address
        return await self.orchestrator.start_checkout(cart, shipping, payment_method, coupon_code, address)

    async def retry_checkout(self, session_id: str) -> CheckoutSession:
        return await self.orchestrator.retry_checkout(session_id)

    async def resume_checkout(self, session: CheckoutSession) -> CheckoutSession:
        """Retry a session restored from storage."""
        self.orchestrator.resume_session(session)
        return await self.orchestrator.retry_checkout(session.session_id)

    async def cancel_checkout(self, session_id: str) -> CheckoutSession:
        return await self.orchestrator.cancel_checkout(session_id)

    def get_progress(self, session_id: str) -> OrderProgress:
        return self.orchestrator.get_progress(session_id)

    async def check_coupon(
        self,
        code: str,
        total: Decimal,
        wallet_address: Optional[str] = None,
        collection_ids: Optional[list[str]] = None,
    ) -> DiscountResult:
        return await self.discounts.calculate(
            total, code, wallet_address or self.wallet.address, collection_ids or [],
        )

    async def get_order(self, batch_order_id: str) -> Optional[BatchOrder]:
        return await self.ledger.get(batch_order_id)

    async def reconcile(self) -> SweepReport:
        return await self.reconciler.sweep()


class Checkout:
    """Sync wrapper around AsyncCheckout. Runs the event loop internally."""

    def __init__(self, **kwargs: Any):
        self._async = AsyncCheckout(**kwargs)
        self._loop = asyncio.new_event_loop()

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def config(self) -> CheckoutConfig:
        return self._async.config

    def start_checkout(self, cart: list[CartLine], shipping: ShippingInfo, payment_method: Any, **kwargs: Any) -> CheckoutSession:
        return self._run(self._async.start_checkout(cart, shipping, payment_method, **kwargs))

    def retry_checkout(self, session_id: str) -> CheckoutSession:
        return self._run(self._async.retry_checkout(session_id))

    def resume_checkout(self, session: CheckoutSession) -> CheckoutSession:
        return self._run(self._async.resume_checkout(session))

    def get_progress(self, session_id: str) -> OrderProgress:
        return self._async.get_progress(session_id)

    def check_coupon(self, code: str, total: Decimal, **kwargs: Any) -> DiscountResult:
        return self._run(self._async.check_coupon(code, total, **kwargs))

    def get_order(self, batch_order_id: str) -> Optional[BatchOrder]:
        return self._run(self._async.get_order(batch_order_id))

    def reconcile(self) -> SweepReport:
        return self._run(self._async.reconcile())

    def close(self) -> None:
        self._run(self._async.close())
        self._loop.close()
