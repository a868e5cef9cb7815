"""
Payment rail contract and failure classification.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx

from storefront_checkout.errors import RailError, TransportError
from storefront_checkout.models.order import BatchOrder
from storefront_checkout.models.payment import PaymentSubmission


class WalletSigner(Protocol):
    """The connected wallet. Signing may prompt the user."""

    @property
    def address(self) -> Optional[str]: ...

    async def transfer(self, recipient: str, amount: Decimal, mint: Optional[str] = None) -> str:
        """Send ``amount`` (UI units) of ``mint`` (native SOL if None); return the signature."""
        ...

    async def sign_and_send(self, transaction: str, chain: str = "solana") -> str:
        """Sign a base64 serialized transaction prepared by a back end; return its hash."""
        ...


class WatchOnlyWallet:
    """A wallet that knows its address but cannot sign."""

    def __init__(self, address: Optional[str] = None):
        self._address = address

    @property
    def address(self) -> Optional[str]:
        return self._address

    async def transfer(self, recipient: str, amount: Decimal, mint: Optional[str] = None) -> str:
        raise PermissionError("User rejected the request: wallet is watch-only")

    async def sign_and_send(self, transaction: str, chain: str = "solana") -> str:
        raise PermissionError("User rejected the request: wallet is watch-only")


class PaymentRail(ABC):
    kind: str

    @abstractmethod
    async def submit(self, batch_order: BatchOrder, method: Any, payer: Optional[str]) -> PaymentSubmission:
        """Initiate payment for ``batch_order``. Returns once submitted, not settled."""


_REJECTED_MARKERS = ("user rejected", "rejected", "denied", "declined by user")
_EXPIRED_MARKERS = ("blockhash not found", "block height exceeded", "quote expired", "expired")


def classify_rail_failure(exc: BaseException) -> RailError:
    """Map a signer, RPC or HTTP failure onto a ``RailError`` kind."""
    if isinstance(exc, RailError):
        return exc
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if isinstance(exc, PermissionError) or any(m in lowered for m in _REJECTED_MARKERS):
        return RailError(RailError.USER_REJECTED, message)
    if "insufficient funds" in lowered or "insufficient lamports" in lowered:
        return RailError(
            RailError.USER_REJECTED,
            message,
            user_message="Insufficient funds in your wallet to complete this payment.",
        )
    if any(m in lowered for m in _EXPIRED_MARKERS):
        return RailError(RailError.QUOTE_EXPIRED, message)
    if isinstance(exc, TransportError):
        return RailError(RailError.TRANSIENT, message, details={"status_code": exc.status_code})
    if isinstance(exc, (httpx.HTTPError, asyncio.TimeoutError, ConnectionError, OSError)):
        return RailError(RailError.TRANSIENT, message)
    # Unknown signer failures are treated as transient; the retry budget bounds them.
    return RailError(RailError.TRANSIENT, message, details={"exception": exc.__class__.__name__})
