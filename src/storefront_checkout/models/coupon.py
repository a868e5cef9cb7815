"""
Coupon models — coupon snapshot and computed discount.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront_checkout.models.cart import EligibilityRules


class Coupon(BaseModel):
    """Read-only coupon snapshot, fetched once per checkout attempt."""
    model_config = ConfigDict(frozen=True)

    code: str
    discount_type: Literal["fixed", "percentage"]
    discount_value: Decimal = Field(ge=0)
    max_discount: Optional[Decimal] = None
    collection_scope: frozenset[str] = frozenset()
    eligibility_rules: Optional[EligibilityRules] = None


class DiscountResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: Optional[str] = None
    pre_discount_total: Decimal
    discount: Decimal = Decimal("0")
    final_price: Decimal
    is_free: bool = False

    @classmethod
    def no_coupon(cls, total: Decimal) -> "DiscountResult":
        return cls(pre_discount_total=total, final_price=total, is_free=total == 0)
