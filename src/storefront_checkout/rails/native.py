"""
Native on-chain transfer of SOL, USDC or the merchant token.
"""

import logging
from decimal import ROUND_UP, Decimal
from typing import Any, Optional

from storefront_checkout.errors import RailError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import USDC_DECIMALS, USDC_MINT, DefaultPayment, PaymentSubmission
from storefront_checkout.rails.base import PaymentRail, WalletSigner, classify_rail_failure
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9
PRICE_IDS = {"SOL": "solana"}


class PriceFeed:
    """USD prices from the CoinGecko simple-price endpoint. USDC is pegged 1:1."""

    def __init__(self, http: HttpClient, merchant_price_id: Optional[str] = None):
        self._http = http
        self._ids = dict(PRICE_IDS)
        if merchant_price_id:
            self._ids["MERCHANT"] = merchant_price_id

    async def usd_price(self, symbol: str) -> Decimal:
        if symbol == "USDC":
            return Decimal("1")
        price_id = self._ids.get(symbol)
        if price_id is None:
            raise RailError(RailError.TRANSIENT, f"No price source for {symbol}")
        data = await self._http.get("/simple/price", params={"ids": price_id, "vs_currencies": "usd"})
        try:
            price = Decimal(str(data[price_id]["usd"]))
        except (KeyError, TypeError) as e:
            raise RailError(RailError.TRANSIENT, f"Price feed returned no USD price for {symbol}") from e
        if price <= 0:
            raise RailError(RailError.TRANSIENT, f"Price feed returned a non-positive price for {symbol}")
        return price


def token_amount(usd_total: Decimal, price: Decimal, decimals: int) -> Decimal:
    """USD total converted to token units, rounded up to the token's precision."""
    return (usd_total / price).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_UP)


class NativeTransferRail(PaymentRail):
    kind = "default"

    def __init__(self, wallet: WalletSigner, prices: PriceFeed, merchant_decimals: int = 9):
        self._wallet = wallet
        self._prices = prices
        self._merchant_decimals = merchant_decimals

    def _asset(self, method: DefaultPayment) -> tuple[Optional[str], int]:
        if method.token == "SOL":
            return None, SOL_DECIMALS
        if method.token == "USDC":
            return USDC_MINT, USDC_DECIMALS
        if not method.merchant_mint:
            raise RailError(RailError.TRANSIENT, "Merchant token mint is not configured")
        return method.merchant_mint, self._merchant_decimals

    async def submit(self, batch_order: BatchOrder, method: Any, payer: Optional[str]) -> PaymentSubmission:
        try:
            mint, decimals = self._asset(method)
            price = await self._prices.usd_price(method.token)
            amount = token_amount(batch_order.total_payment_amount, price, decimals)
            signature = await self._wallet.transfer(batch_order.receiver_wallet, amount, mint)
        except RailError:
            raise
        except Exception as e:
            raise classify_rail_failure(e) from e

        logger.info(
            "Sent %s %s for batch %s, signature %s",
            amount, method.token, batch_order.batch_order_id, signature,
        )
        return PaymentSubmission(
            reference=signature,
            rail=self.kind,
            amount=amount,
            asset=method.token,
            recipient=batch_order.receiver_wallet,
            payer=payer,
        )
