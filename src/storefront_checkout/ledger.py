"""
Order ledger — durable batch-order storage behind an idempotency token.

``LedgerAPI`` talks to the storefront back end over REST; ``MemoryLedger``
implements the same contract in process (development and tests).
``OrderLedgerClient`` is what the orchestrator uses: it adds deadlines,
bounded retries that reuse the idempotency token, and error mapping.

Status transitions are compare-and-swap style:

    created ──attach ref──▶ awaiting_payment ──confirm──▶ confirmed
       │                         │
       └─────────fail────────────┴──────────fail──────▶ failed
"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Optional, Protocol

from storefront_checkout.errors import LedgerError, TransportError
from storefront_checkout.models.cart import CartLine, ShippingInfo, cart_total
from storefront_checkout.models.order import BatchOrder, BatchOrderStatus
from storefront_checkout.models.settlement import ExpectedSettlement, VerificationResult
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.00001")
FREE_REFERENCE_PREFIX = "free_order_batch_"


class LedgerBackend(Protocol):
    async def create_batch_order(
        self,
        idempotency_token: str,
        lines: list[CartLine],
        shipping: ShippingInfo,
        payment_metadata: dict[str, Any],
        wallet_address: Optional[str] = None,
    ) -> BatchOrder: ...

    async def update_order_transaction(self, batch_order_id: str, reference: str, amount: Decimal) -> bool: ...

    async def confirm_order(self, batch_order_id: str) -> bool: ...

    async def fail_order(self, batch_order_id: str, reason: str) -> bool: ...

    async def verify_transaction(self, reference: str, expected: ExpectedSettlement) -> VerificationResult: ...

    async def get_batch_order(self, batch_order_id: str) -> Optional[BatchOrder]: ...

    async def list_pending(self, limit: int = 50) -> list[BatchOrder]: ...


def free_order_reference(batch_order_id: str) -> str:
    return f"{FREE_REFERENCE_PREFIX}{batch_order_id}_{int(time.time() * 1000)}"


# ═══════════════════════════════════════════════════════════════════════════════
# REST back end
# ═══════════════════════════════════════════════════════════════════════════════


def _parse_batch_order(data: dict[str, Any], token: Optional[str] = None) -> BatchOrder:
    orders = data.get("orders") or []
    order_ids = data.get("orderIds") or [o["orderId"] for o in orders if o.get("orderId")]
    order_numbers = data.get("orderNumbers") or (
        [data["orderNumber"]] if data.get("orderNumber") else
        sorted({o["orderNumber"] for o in orders if o.get("orderNumber")})
    )
    return BatchOrder(
        batch_order_id=data["batchOrderId"],
        order_ids=order_ids,
        order_numbers=order_numbers,
        total_payment_amount=Decimal(str(data.get("totalPaymentAmount", 0))),
        receiver_wallet=data.get("receiverWallet") or "",
        transaction_ref=data.get("transactionSignature") or data.get("transactionRef"),
        payment_amount=Decimal(str(data["paymentAmount"])) if data.get("paymentAmount") is not None else None,
        status=BatchOrderStatus(data.get("status", BatchOrderStatus.CREATED.value)),
        is_free_order=bool(data.get("isFreeOrder", False)),
        idempotency_token=data.get("idempotencyToken", token),
    )


class LedgerAPI:
    """Order ledger over the storefront REST functions."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def create_batch_order(
        self,
        idempotency_token: str,
        lines: list[CartLine],
        shipping: ShippingInfo,
        payment_metadata: dict[str, Any],
        wallet_address: Optional[str] = None,
    ) -> BatchOrder:
        data = await self._http.post(
            "/create-batch-order",
            {
                "idempotencyToken": idempotency_token,
                "items": [line.model_dump(mode="json") for line in lines],
                "shippingInfo": shipping.model_dump(mode="json"),
                "walletAddress": wallet_address or "anonymous",
                "paymentMetadata": payment_metadata,
            },
            headers={"Idempotency-Key": idempotency_token},
        )
        return _parse_batch_order(data, idempotency_token)

    async def update_order_transaction(self, batch_order_id: str, reference: str, amount: Decimal) -> bool:
        data = await self._http.post("/update-order-transaction", {
            "batchOrderId": batch_order_id,
            "transactionSignature": reference,
            "amount": str(amount),
        })
        return bool(data.get("ok", data.get("success", False)))

    async def confirm_order(self, batch_order_id: str) -> bool:
        data = await self._http.post("/confirm-order", {"batchOrderId": batch_order_id})
        return bool(data.get("ok", data.get("success", False)))

    async def fail_order(self, batch_order_id: str, reason: str) -> bool:
        data = await self._http.post("/fail-order", {"batchOrderId": batch_order_id, "reason": reason})
        return bool(data.get("ok", data.get("success", False)))

    async def verify_transaction(self, reference: str, expected: ExpectedSettlement) -> VerificationResult:
        try:
            data = await self._http.post("/verify-transaction", {
                "signature": reference,
                "expectedDetails": expected.model_dump(mode="json"),
            })
        except TransportError as e:
            # 400 carries a verdict (failed or mismatched); anything else is "try again".
            if e.status_code == 400 and isinstance(e.payload, dict):
                data = e.payload
            else:
                raise
        return VerificationResult(
            confirmed=bool(data.get("confirmed", False)),
            failed=bool(data.get("failed", False)),
            mismatch=bool(data.get("mismatch", False)),
            error=data.get("error"),
        )

    async def get_batch_order(self, batch_order_id: str) -> Optional[BatchOrder]:
        try:
            data = await self._http.get("/get-batch-orders", params={"batchOrderId": batch_order_id})
        except TransportError as e:
            if e.status_code == 404:
                return None
            raise
        return _parse_batch_order(data)

    async def list_pending(self, limit: int = 50) -> list[BatchOrder]:
        data = await self._http.get("/get-batch-orders", params={
            "status": BatchOrderStatus.AWAITING_PAYMENT.value,
            "limit": limit,
        })
        return [_parse_batch_order(item) for item in data.get("batchOrders", [])]


# ═══════════════════════════════════════════════════════════════════════════════
# In-process back end
# ═══════════════════════════════════════════════════════════════════════════════


def _payload_hash(lines: list[CartLine], shipping: ShippingInfo, payment_metadata: dict[str, Any]) -> str:
    blob = json.dumps(
        {
            "items": [line.model_dump(mode="json") for line in lines],
            "shipping": shipping.model_dump(mode="json"),
            "meta": payment_metadata,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(blob.encode()).hexdigest()


class MemoryLedger:
    """In-memory ledger with server-side idempotency and guarded transitions.

    Transactions the ledger should "see" on chain are registered with
    ``record_settlement``; unknown references verify as pending.
    """

    def __init__(self, receiver_wallet: str = "MerchantReceiverWallet1111111111111111111111", latency: float = 0.0):
        self.receiver_wallet = receiver_wallet
        self.latency = latency
        self._orders: dict[str, BatchOrder] = {}
        self._by_token: dict[str, str] = {}
        self._hashes: dict[str, str] = {}
        self._settlements: dict[str, dict[str, Any]] = {}
        self._next_number = 1001
        self._lock = asyncio.Lock()
        self.rows: list[dict[str, Any]] = []
        self.calls: list[dict[str, Any]] = []

    async def create_batch_order(
        self,
        idempotency_token: str,
        lines: list[CartLine],
        shipping: ShippingInfo,
        payment_metadata: dict[str, Any],
        wallet_address: Optional[str] = None,
    ) -> BatchOrder:
        self.calls.append({"method": "create_batch_order", "token": idempotency_token})
        digest = _payload_hash(lines, shipping, payment_metadata)
        async with self._lock:
            if self.latency:
                await asyncio.sleep(self.latency)
            existing_id = self._by_token.get(idempotency_token)
            if existing_id is not None:
                if self._hashes[idempotency_token] != digest:
                    raise LedgerError(
                        f"Idempotency token {idempotency_token} reused with a different cart",
                        code="idempotency_conflict",
                    )
                return self._orders[existing_id]

            if not lines:
                raise LedgerError("Invalid or empty items array", code="invalid_items")

            batch_order_id = str(uuid.uuid4())
            order_number = f"SF-{self._next_number}"
            self._next_number += 1
            discount = Decimal(str(payment_metadata.get("couponDiscount", 0)))
            total = max(Decimal("0"), cart_total(lines) - discount)
            order_ids = []
            for index, line in enumerate(lines, start=1):
                order_id = str(uuid.uuid4())
                order_ids.append(order_id)
                self.rows.append({
                    "order_id": order_id,
                    "batch_order_id": batch_order_id,
                    "item_id": line.item_id,
                    "order_number": order_number,
                    "item_index": index,
                    "total_items_in_batch": len(lines),
                    "wallet_address": wallet_address or "anonymous",
                })
            order = BatchOrder(
                batch_order_id=batch_order_id,
                order_ids=order_ids,
                order_numbers=[order_number],
                total_payment_amount=total,
                receiver_wallet=self.receiver_wallet,
                status=BatchOrderStatus.CREATED,
                is_free_order=total == 0,
                idempotency_token=idempotency_token,
            )
            self._orders[batch_order_id] = order
            self._by_token[idempotency_token] = batch_order_id
            self._hashes[idempotency_token] = digest
            return order

    async def _transition(
        self,
        batch_order_id: str,
        allowed_from: set[BatchOrderStatus],
        target: BatchOrderStatus,
        **changes: Any,
    ) -> bool:
        async with self._lock:
            order = self._orders.get(batch_order_id)
            if order is None:
                return False
            if order.status == target and not changes:
                return True
            if order.status not in allowed_from:
                return False
            self._orders[batch_order_id] = order.model_copy(update={"status": target, **changes})
            return True

    async def update_order_transaction(self, batch_order_id: str, reference: str, amount: Decimal) -> bool:
        self.calls.append({"method": "update_order_transaction", "batch_order_id": batch_order_id, "reference": reference})
        return await self._transition(
            batch_order_id,
            {BatchOrderStatus.CREATED, BatchOrderStatus.AWAITING_PAYMENT},
            BatchOrderStatus.AWAITING_PAYMENT,
            transaction_ref=reference,
            payment_amount=amount,
        )

    async def confirm_order(self, batch_order_id: str) -> bool:
        self.calls.append({"method": "confirm_order", "batch_order_id": batch_order_id})
        return await self._transition(batch_order_id, {BatchOrderStatus.AWAITING_PAYMENT}, BatchOrderStatus.CONFIRMED)

    async def fail_order(self, batch_order_id: str, reason: str) -> bool:
        self.calls.append({"method": "fail_order", "batch_order_id": batch_order_id, "reason": reason})
        return await self._transition(
            batch_order_id,
            {BatchOrderStatus.CREATED, BatchOrderStatus.AWAITING_PAYMENT},
            BatchOrderStatus.FAILED,
        )

    def record_settlement(
        self,
        reference: str,
        amount: Decimal,
        recipient: str,
        buyer: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self._settlements[reference] = {"amount": amount, "recipient": recipient, "buyer": buyer, "error": error}

    async def verify_transaction(self, reference: str, expected: ExpectedSettlement) -> VerificationResult:
        self.calls.append({"method": "verify_transaction", "reference": reference})
        if reference.startswith(FREE_REFERENCE_PREFIX):
            return VerificationResult(confirmed=True)
        seen = self._settlements.get(reference)
        if seen is None:
            return VerificationResult(error="Transaction not found")
        if seen["error"]:
            return VerificationResult(failed=True, error=f"Transaction failed: {seen['error']}")
        if abs(seen["amount"] - expected.amount) > AMOUNT_TOLERANCE:
            return VerificationResult(
                mismatch=True, error=f"Amount mismatch: expected {expected.amount}, got {seen['amount']}",
            )
        if expected.buyer and seen["buyer"] and seen["buyer"].lower() != expected.buyer.lower():
            return VerificationResult(mismatch=True, error=f"Buyer mismatch: expected {expected.buyer}, got {seen['buyer']}")
        if seen["recipient"].lower() != expected.recipient.lower():
            return VerificationResult(
                mismatch=True, error=f"Recipient mismatch: expected {expected.recipient}, got {seen['recipient']}",
            )
        return VerificationResult(confirmed=True)

    async def get_batch_order(self, batch_order_id: str) -> Optional[BatchOrder]:
        return self._orders.get(batch_order_id)

    async def list_pending(self, limit: int = 50) -> list[BatchOrder]:
        pending = [
            o for o in self._orders.values()
            if o.status == BatchOrderStatus.AWAITING_PAYMENT and o.transaction_ref
        ]
        return pending[:limit]


# ═══════════════════════════════════════════════════════════════════════════════
# Client used by the orchestrator
# ═══════════════════════════════════════════════════════════════════════════════


class OrderLedgerClient:
    def __init__(
        self,
        backend: LedgerBackend,
        create_retries: int = 3,
        timeout: float = 30.0,
        backoff: float = 0.5,
    ):
        self._backend = backend
        self._create_retries = create_retries
        self._timeout = timeout
        self._backoff = backoff

    @property
    def backend(self) -> LedgerBackend:
        return self._backend

    async def create_batch_order(
        self,
        idempotency_token: str,
        lines: list[CartLine],
        shipping: ShippingInfo,
        payment_metadata: dict[str, Any],
        wallet_address: Optional[str] = None,
    ) -> BatchOrder:
        """Create the batch order, retrying transient failures with the same token."""
        attempt = 0
        while True:
            attempt += 1
            try:
                order = await asyncio.wait_for(
                    self._backend.create_batch_order(
                        idempotency_token, lines, shipping, payment_metadata, wallet_address,
                    ),
                    timeout=self._timeout,
                )
            except (TransportError, asyncio.TimeoutError) as e:
                retryable = isinstance(e, asyncio.TimeoutError) or e.retryable
                if not retryable or attempt > self._create_retries:
                    logger.error("Batch order creation failed after %d attempt(s): %s", attempt, e)
                    raise LedgerError(f"Failed to create batch order: {e}") from e
                delay = self._backoff * (2 ** (attempt - 1))
                logger.warning("Batch order creation attempt %d failed (%s); retrying in %.1fs", attempt, e, delay)
                await asyncio.sleep(delay)
                continue
            logger.info(
                "Batch order %s created (%s), total %s",
                order.batch_order_id, order.order_number, order.total_payment_amount,
            )
            return order

    async def _call(self, what: str, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except (TransportError, asyncio.TimeoutError) as e:
            raise LedgerError(f"{what} failed: {e}") from e

    async def attach_reference(self, batch_order_id: str, reference: str, amount: Decimal) -> None:
        ok = await self._call(
            "update_order_transaction",
            self._backend.update_order_transaction(batch_order_id, reference, amount),
        )
        if not ok:
            raise LedgerError(
                f"Batch order {batch_order_id} is no longer awaiting payment",
                code="ledger_conflict",
            )

    async def finalize(self, batch_order_id: str) -> None:
        ok = await self._call("confirm_order", self._backend.confirm_order(batch_order_id))
        if not ok:
            raise LedgerError(f"Batch order {batch_order_id} could not be confirmed", code="ledger_conflict")
        logger.info("Batch order %s confirmed", batch_order_id)

    async def mark_failed(self, batch_order_id: str, reason: str) -> bool:
        ok = await self._call("fail_order", self._backend.fail_order(batch_order_id, reason))
        if not ok:
            logger.warning("Batch order %s was not marked failed (already settled?)", batch_order_id)
        else:
            logger.info("Batch order %s marked failed: %s", batch_order_id, reason)
        return ok

    async def verify(self, reference: str, expected: ExpectedSettlement) -> VerificationResult:
        return await asyncio.wait_for(self._backend.verify_transaction(reference, expected), timeout=self._timeout)

    async def get(self, batch_order_id: str) -> Optional[BatchOrder]:
        return await self._call("get_batch_order", self._backend.get_batch_order(batch_order_id))
