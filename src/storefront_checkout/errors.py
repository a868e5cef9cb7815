"""
Checkout error types.

Every error carries an internal ``code``/``message`` for logs and a separate
``user_message`` that is safe to show in the checkout surface.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    default_user_message = "Something went wrong during checkout. Please try again."

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details
        self.user_message = user_message or self.default_user_message


class ValidationError(CheckoutError):
    default_user_message = "Please check your checkout details."

    def __init__(self, message: str, code: str = "validation_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details, user_message=message)


class CouponError(ValidationError):
    def __init__(self, message: str, code: str = "invalid_coupon"):
        super().__init__(message, code)


class EligibilityError(CheckoutError):
    def __init__(self, item_names: list[str], reasons: Optional[dict[str, str]] = None):
        names = ", ".join(item_names)
        super().__init__(
            "ineligible_items",
            f"Wallet is not eligible for: {names}",
            details={"items": item_names, "reasons": reasons or {}},
            user_message=f"You don't have access to these items: {names}. Please remove them from your cart.",
        )
        self.item_names = item_names


class LedgerError(CheckoutError):
    default_user_message = "We couldn't create your order. Please start checkout again."

    def __init__(self, message: str, code: str = "ledger_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class RailError(CheckoutError):
    USER_REJECTED = "user_rejected"
    TRANSIENT = "transient"
    QUOTE_EXPIRED = "quote_expired"

    _user_messages = {
        USER_REJECTED: "Payment was cancelled in your wallet.",
        TRANSIENT: "The payment network is not responding. You can retry the payment.",
        QUOTE_EXPIRED: "The price quote expired. Please retry the payment.",
    }

    def __init__(
        self,
        kind: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(f"rail_{kind}", message, details, user_message=user_message or self._user_messages.get(kind))
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind != self.USER_REJECTED


class ConfirmationTimeout(CheckoutError):
    def __init__(self, reference: str, waited_s: float):
        super().__init__(
            "confirmation_timeout",
            f"No settlement for {reference} after {waited_s:.0f}s",
            details={"reference": reference},
            user_message="Your payment is still pending. We'll confirm your order as soon as it settles.",
        )
        self.reference = reference


class ReconciliationMismatch(CheckoutError):
    def __init__(self, reference: str, reason: str):
        super().__init__(
            "reconciliation_mismatch",
            f"Transaction {reference} does not match the order: {reason}",
            details={"reference": reference},
            user_message="Your payment could not be matched to this order. Please contact support.",
        )
        self.reference = reference


class SettlementFailed(CheckoutError):
    def __init__(self, reference: str, reason: str):
        super().__init__(
            "settlement_failed",
            f"Payment {reference} failed: {reason}",
            details={"reference": reference},
            user_message="Your payment failed. You can retry the checkout.",
        )


class SettlementInProgress(CheckoutError):
    def __init__(self, batch_order_id: str):
        super().__init__("settlement_in_progress", f"Batch order {batch_order_id} is already being watched")


class CheckoutCancelled(CheckoutError):
    def __init__(self) -> None:
        super().__init__("cancelled", "Checkout cancelled by user", user_message="Checkout cancelled.")


class IllegalTransition(CheckoutError):
    def __init__(self, current: str, target: str):
        super().__init__("illegal_transition", f"Cannot move checkout from {current} to {target}")


class TransportError(CheckoutError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        payload: Any = None,
    ):
        super().__init__("http_error", message, details={"status_code": status_code})
        self.status_code = status_code
        self.retryable = retryable
        self.payload = payload
