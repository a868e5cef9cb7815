"""
Cross-chain rail: the buyer pays on another chain and a deBridge DLN order
delivers USDC to the receiver on Solana.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from storefront_checkout.errors import RailError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import USDC_DECIMALS, USDC_MINT, PaymentSubmission
from storefront_checkout.rails.base import PaymentRail, WalletSigner, classify_rail_failure
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

SOLANA_CHAIN_ID = 7565164

CHAIN_IDS = {
    "ethereum": 1,
    "optimism": 10,
    "bsc": 56,
    "polygon": 137,
    "base": 8453,
    "arbitrum": 42161,
    "avalanche": 43114,
}

SOURCE_USDC = {
    "ethereum": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    "optimism": "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    "bsc": "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
    "polygon": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "arbitrum": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    "avalanche": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
}


class BridgeAPI:
    def __init__(self, http: HttpClient):
        self._http = http

    async def create_order_tx(
        self,
        source_chain: str,
        source_token: str,
        out_amount: int,
        recipient: str,
        sender: str,
    ) -> dict[str, Any]:
        return await self._http.get("/dln/order/create-tx", params={
            "srcChainId": CHAIN_IDS[source_chain],
            "srcChainTokenIn": source_token,
            "srcChainTokenInAmount": "auto",
            "dstChainId": SOLANA_CHAIN_ID,
            "dstChainTokenOut": USDC_MINT,
            "dstChainTokenOutAmount": out_amount,
            "dstChainTokenOutRecipient": recipient,
            "srcChainOrderAuthorityAddress": sender,
            "dstChainOrderAuthorityAddress": recipient,
            "prependOperatingExpenses": "true",
        })


class BridgeRail(PaymentRail):
    kind = "cross_chain"

    def __init__(self, wallet: WalletSigner, bridge: BridgeAPI):
        self._wallet = wallet
        self._bridge = bridge

    async def submit(self, batch_order: BatchOrder, method: Any, payer: Optional[str]) -> PaymentSubmission:
        chain = method.source_chain.lower()
        if chain not in CHAIN_IDS:
            raise RailError(RailError.USER_REJECTED, f"Unsupported source chain {method.source_chain}",
                            user_message=f"Payments from {method.source_chain} are not supported.")
        if not payer:
            raise RailError(RailError.USER_REJECTED, "No wallet connected for cross-chain payment")
        total = batch_order.total_payment_amount
        source_token = method.source_token_address or SOURCE_USDC[chain]

        try:
            order = await self._bridge.create_order_tx(
                chain, source_token, int(total * (10 ** USDC_DECIMALS)), batch_order.receiver_wallet, payer,
            )
            tx = order.get("tx") or {}
            if not tx.get("data"):
                raise RailError(RailError.TRANSIENT, "Bridge returned no transaction")
            tx_hash = await self._wallet.sign_and_send(tx["data"], chain=chain)
        except RailError:
            raise
        except Exception as e:
            raise classify_rail_failure(e) from e

        fee = None
        token_in = (order.get("estimation") or {}).get("srcChainTokenIn") or {}
        if token_in.get("amount") is not None:
            paid = Decimal(str(token_in["amount"])).scaleb(-int(token_in.get("decimals", USDC_DECIMALS)))
            fee = max(Decimal("0"), paid - total)

        logger.info(
            "Bridge order %s submitted from %s for batch %s, tx %s",
            order.get("orderId"), chain, batch_order.batch_order_id, tx_hash,
        )
        return PaymentSubmission(
            reference=tx_hash,
            rail=self.kind,
            amount=total,
            asset=method.bridged_asset,
            recipient=batch_order.receiver_wallet,
            payer=payer,
            fee=fee,
        )
