"""
Payment method variants and rail submission results.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_DECIMALS = 6


class DefaultPayment(BaseModel):
    """Direct transfer of SOL, USDC or the merchant token to the receiver."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["default"] = "default"
    token: Literal["SOL", "USDC", "MERCHANT"] = "SOL"
    merchant_mint: Optional[str] = None


class CardPayment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["card"] = "card"


class SplTokenPayment(BaseModel):
    """Pay with any SPL token, swapped to USDC in the same transaction."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["spl_token"] = "spl_token"
    address: str
    symbol: str
    decimals: int = 9
    chain_meta: dict[str, Any] = Field(default_factory=dict)


class CrossChainPayment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cross_chain"] = "cross_chain"
    source_chain: str
    bridged_asset: str = "USDC"
    source_token_address: Optional[str] = None


PaymentMethod = Annotated[
    Union[DefaultPayment, CardPayment, SplTokenPayment, CrossChainPayment],
    Field(discriminator="kind"),
]

PAYMENT_KINDS = ("default", "card", "spl_token", "cross_chain")
ON_CHAIN_KINDS = frozenset({"default", "spl_token", "cross_chain"})


def requires_wallet(method: Any) -> bool:
    return method.kind in ON_CHAIN_KINDS


class PaymentSubmission(BaseModel):
    """What a rail hands back once payment has been submitted (not settled)."""
    model_config = ConfigDict(frozen=True)

    reference: str
    rail: str
    amount: Decimal
    asset: str
    recipient: str
    payer: Optional[str] = None
    awaiting_external: bool = False
    fee: Optional[Decimal] = None
    client_secret: Optional[str] = None
