"""
storefront-checkout — checkout orchestration for a multi-rail storefront.

Eligibility re-check, coupon discounts, idempotent batch orders, payment over
card / on-chain / swap / bridge rails and settlement reconciliation.
"""

from storefront_checkout.client import Checkout, AsyncCheckout
from storefront_checkout.config import CheckoutConfig, RailTiming, load_config
from storefront_checkout.orchestrator import CheckoutOrchestrator
from storefront_checkout.ledger import LedgerAPI, MemoryLedger, OrderLedgerClient
from storefront_checkout.errors import (
    CheckoutError,
    ValidationError,
    CouponError,
    EligibilityError,
    LedgerError,
    RailError,
    ConfirmationTimeout,
    ReconciliationMismatch,
    SettlementFailed,
    SettlementInProgress,
    CheckoutCancelled,
    TransportError,
)
from storefront_checkout.models.order import ProgressState, BatchOrderStatus

__version__ = "0.1.0"
__all__ = [
    "Checkout",
    "AsyncCheckout",
    "CheckoutConfig",
    "RailTiming",
    "load_config",
    "CheckoutOrchestrator",
    "LedgerAPI",
    "MemoryLedger",
    "OrderLedgerClient",
    "CheckoutError",
    "ValidationError",
    "CouponError",
    "EligibilityError",
    "LedgerError",
    "RailError",
    "ConfirmationTimeout",
    "ReconciliationMismatch",
    "SettlementFailed",
    "SettlementInProgress",
    "CheckoutCancelled",
    "TransportError",
    "ProgressState",
    "BatchOrderStatus",
]
