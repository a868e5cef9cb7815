"""
Order models — ledger batch orders, checkout progress and the session value object.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront_checkout.errors import IllegalTransition
from storefront_checkout.models.cart import CartLine, ShippingInfo
from storefront_checkout.models.coupon import DiscountResult
from storefront_checkout.models.payment import PaymentMethod, PaymentSubmission


class BatchOrderStatus(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class BatchOrder(BaseModel):
    """One ledger record covering every line of a checkout attempt."""
    model_config = ConfigDict(frozen=True)

    batch_order_id: str
    order_ids: list[str] = Field(default_factory=list)
    order_numbers: list[str] = Field(default_factory=list)
    total_payment_amount: Decimal
    receiver_wallet: str = ""
    transaction_ref: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    status: BatchOrderStatus = BatchOrderStatus.CREATED
    is_free_order: bool = False
    idempotency_token: Optional[str] = None

    @property
    def order_number(self) -> Optional[str]:
        return self.order_numbers[0] if self.order_numbers else None


class ProgressState(str, Enum):
    INITIAL = "initial"
    CREATING_ORDER = "creating_order"
    PROCESSING_PAYMENT = "processing_payment"
    CONFIRMING_TRANSACTION = "confirming_transaction"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (ProgressState.SUCCESS, ProgressState.ERROR)


_RANK = {
    ProgressState.INITIAL: 0,
    ProgressState.CREATING_ORDER: 1,
    ProgressState.PROCESSING_PAYMENT: 2,
    ProgressState.CONFIRMING_TRANSACTION: 3,
    ProgressState.SUCCESS: 4,
    ProgressState.ERROR: 4,
}

# Legal edges within one attempt. Retrying starts a new attempt from INITIAL.
TRANSITIONS: dict[ProgressState, frozenset[ProgressState]] = {
    ProgressState.INITIAL: frozenset({ProgressState.CREATING_ORDER, ProgressState.PROCESSING_PAYMENT}),
    ProgressState.CREATING_ORDER: frozenset({
        ProgressState.PROCESSING_PAYMENT, ProgressState.SUCCESS, ProgressState.ERROR,
    }),
    ProgressState.PROCESSING_PAYMENT: frozenset({ProgressState.CONFIRMING_TRANSACTION, ProgressState.ERROR}),
    ProgressState.CONFIRMING_TRANSACTION: frozenset({ProgressState.SUCCESS, ProgressState.ERROR}),
    ProgressState.SUCCESS: frozenset(),
    ProgressState.ERROR: frozenset(),
}


class OrderProgress(BaseModel):
    state: ProgressState = ProgressState.INITIAL
    reason: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    recoverable: bool = False
    batch_order: Optional[BatchOrder] = None
    history: list[ProgressState] = Field(default_factory=lambda: [ProgressState.INITIAL])

    def advance(self, state: ProgressState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, code: str, reason: str, message: str, recoverable: bool = False) -> None:
        self.advance(ProgressState.ERROR)
        self.error_code = code
        self.reason = reason
        self.message = message
        self.recoverable = recoverable


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    cart: list[CartLine]
    shipping: ShippingInfo
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None
    wallet_address: Optional[str] = None


def _new_token() -> str:
    return uuid.uuid4().hex


class CheckoutSession(BaseModel):
    """Everything one checkout needs between orchestrator calls.

    Serializable, so an in-flight checkout can be resumed after a restart.
    """

    session_id: str = Field(default_factory=lambda: f"chk_{uuid.uuid4().hex[:16]}")
    request: CheckoutRequest
    idempotency_token: str = Field(default_factory=_new_token)
    progress: OrderProgress = Field(default_factory=OrderProgress)
    discount: Optional[DiscountResult] = None
    submission: Optional[PaymentSubmission] = None
    attempt: int = 1
    cart_cleared: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def batch_order(self) -> Optional[BatchOrder]:
        return self.progress.batch_order

    @property
    def state(self) -> ProgressState:
        return self.progress.state

    def next_attempt(self) -> None:
        """Start a new attempt. The token is kept once a batch order exists."""
        batch_order = self.progress.batch_order
        if batch_order is None:
            self.idempotency_token = _new_token()
        self.progress = OrderProgress(batch_order=batch_order)
        self.submission = None
        self.attempt += 1
