"""
Swap-then-pay: any SPL token is swapped to exactly the order total in USDC
and delivered to the receiver in one transaction (Jupiter v6 aggregator).
"""

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Optional

from storefront_checkout.errors import RailError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import USDC_DECIMALS, USDC_MINT, PaymentSubmission
from storefront_checkout.rails.base import PaymentRail, WalletSigner, classify_rail_failure
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 300


class SwapAPI:
    """Jupiter quote + swap-transaction endpoints."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def quote(self, input_mint: str, output_mint: str, out_amount: int, slippage_bps: int) -> dict[str, Any]:
        return await self._http.get("/quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": out_amount,
            "swapMode": "ExactOut",
            "slippageBps": slippage_bps,
        })

    async def swap_transaction(
        self,
        quote: dict[str, Any],
        user_public_key: str,
        destination_account: Optional[str] = None,
    ) -> str:
        body: dict[str, Any] = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
        }
        if destination_account:
            body["destinationTokenAccount"] = destination_account
        data = await self._http.post("/swap", body)
        tx = data.get("swapTransaction")
        if not tx:
            raise RailError(RailError.TRANSIENT, "Swap API returned no transaction")
        return tx


class SwapRail(PaymentRail):
    kind = "spl_token"

    def __init__(
        self,
        wallet: WalletSigner,
        swaps: SwapAPI,
        quote_ttl: float = 30.0,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        destination_account: Optional[Callable[[str], str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._wallet = wallet
        self._swaps = swaps
        self._quote_ttl = quote_ttl
        self._slippage_bps = slippage_bps
        self._destination_account = destination_account
        self._clock = clock

    async def submit(self, batch_order: BatchOrder, method: Any, payer: Optional[str]) -> PaymentSubmission:
        if not payer:
            raise RailError(RailError.USER_REJECTED, "No wallet connected for token swap")
        total = batch_order.total_payment_amount
        out_amount = int(total * (10 ** USDC_DECIMALS))
        receiver = batch_order.receiver_wallet
        destination = self._destination_account(receiver) if self._destination_account else None

        try:
            quote = await self._swaps.quote(method.address, USDC_MINT, out_amount, self._slippage_bps)
            quoted_at = self._clock()
            tx = await self._swaps.swap_transaction(quote, payer, destination)
            if self._clock() - quoted_at > self._quote_ttl:
                raise RailError(RailError.QUOTE_EXPIRED, f"Quote older than {self._quote_ttl:.0f}s")
            signature = await self._wallet.sign_and_send(tx)
        except RailError:
            raise
        except Exception as e:
            raise classify_rail_failure(e) from e

        in_amount = Decimal(str(quote.get("inAmount", 0))).scaleb(-method.decimals)
        logger.info(
            "Swapped %s %s into %s USDC for batch %s, signature %s",
            in_amount, method.symbol, total, batch_order.batch_order_id, signature,
        )
        return PaymentSubmission(
            reference=signature,
            rail=self.kind,
            amount=total,
            asset="USDC",
            recipient=receiver,
            payer=payer,
        )
