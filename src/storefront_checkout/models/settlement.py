"""
Settlement models — verification request/response and monitor outcome.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class ExpectedSettlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    buyer: Optional[str] = None
    recipient: str


class VerificationResult(BaseModel):
    """verify-transaction response.

    Neither confirmed, failed nor mismatched means "not final yet".
    """
    confirmed: bool = False
    failed: bool = False
    mismatch: bool = False
    error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return not (self.confirmed or self.failed or self.mismatch)


class ConfirmationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["confirmed", "failed", "timed_out"]
    reference: str
    reason: Optional[str] = None
    mismatch: bool = False
    attempts: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"


class SettlementNotice(BaseModel):
    """Push notification emitted by the back end when a webhook settles a payment."""
    reference: str
    batch_order_id: Optional[str] = None
    status: str = ""
