"""
Cart models — cart lines, item access rules and shipping details.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EligibilityRule(BaseModel):
    """Single access requirement: hold a token/NFT or be whitelisted."""
    model_config = ConfigDict(frozen=True)

    type: Literal["token", "nft", "whitelist"]
    value: str
    quantity: int = 1


class EligibilityGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    operator: Literal["AND", "OR"] = "AND"
    rules: tuple[EligibilityRule, ...] = ()


class EligibilityRules(BaseModel):
    """Rule groups. Groups are AND-ed; the operator applies inside a group."""
    model_config = ConfigDict(frozen=True)

    groups: tuple[EligibilityGroup, ...] = ()

    @property
    def empty(self) -> bool:
        return not any(group.rules for group in self.groups)


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    item_name: str = ""
    collection_id: Optional[str] = None
    selected_options: dict[str, str] = Field(default_factory=dict)
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal
    price_adjustments: Decimal = Decimal("0")
    eligibility_rules: Optional[EligibilityRules] = None

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price + self.price_adjustments) * self.quantity

    @property
    def display_name(self) -> str:
        return self.item_name or self.item_id

    @property
    def has_rules(self) -> bool:
        return self.eligibility_rules is not None and not self.eligibility_rules.empty


REQUIRED_SHIPPING_FIELDS = ("first_name", "last_name", "address", "city", "zip", "country", "email")


class ShippingInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str = ""
    last_name: str = ""
    address: str = ""
    city: str = ""
    state: Optional[str] = None
    zip: str = ""
    country: str = ""
    email: str = ""
    phone: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_SHIPPING_FIELDS if not getattr(self, name).strip()]


def cart_total(lines: list[CartLine]) -> Decimal:
    return sum((line.line_total for line in lines), Decimal("0"))


def collection_ids(lines: list[CartLine]) -> list[str]:
    """Distinct collection ids in cart order."""
    seen: list[str] = []
    for line in lines:
        if line.collection_id and line.collection_id not in seen:
            seen.append(line.collection_id)
    return seen
