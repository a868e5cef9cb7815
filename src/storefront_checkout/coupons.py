"""
Coupon validation and discount calculation.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from storefront_checkout.eligibility import AccessChecker, evaluate_rules
from storefront_checkout.errors import CouponError, TransportError
from storefront_checkout.models.cart import EligibilityRules
from storefront_checkout.models.coupon import Coupon, DiscountResult
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class CouponsAPI:
    """Coupon service. Checks the code is active and returns its snapshot."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def validate_coupon(self, code: str, wallet_address: str, collection_ids: list[str]) -> Coupon:
        try:
            data = await self._http.post("/validate-coupons", {
                "code": code,
                "walletAddress": wallet_address,
                "productCollectionIds": collection_ids,
            })
        except TransportError as e:
            if e.status_code is not None and 400 <= e.status_code < 500:
                payload = e.payload if isinstance(e.payload, dict) else {}
                raise CouponError(payload.get("details") or payload.get("error") or "Invalid coupon code") from e
            raise
        if not data.get("valid", data.get("success", False)):
            raise CouponError(data.get("error") or "Invalid coupon code")
        return _parse_coupon(code, data.get("coupon", data))


def _parse_coupon(code: str, raw: dict) -> Coupon:
    discount_type = raw.get("discountType") or raw.get("discount_type") or "fixed"
    if discount_type.startswith("fixed"):
        discount_type = "fixed"
    rules = raw.get("eligibilityRules") or raw.get("eligibility_rules")
    max_discount = raw.get("maxDiscount", raw.get("max_discount"))
    return Coupon(
        code=(raw.get("code") or code).upper(),
        discount_type=discount_type,
        discount_value=Decimal(str(raw.get("discountValue", raw.get("discount_value", 0)))),
        max_discount=Decimal(str(max_discount)) if max_discount is not None else None,
        collection_scope=frozenset(raw.get("collectionIds") or raw.get("collection_ids") or ()),
        eligibility_rules=EligibilityRules.model_validate(rules) if rules else None,
    )


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_discount(total: Decimal, coupon: Coupon) -> DiscountResult:
    """Discount for ``total``; always within ``[0, total]``."""
    total = max(total, Decimal("0"))
    if coupon.discount_type == "fixed":
        discount = min(coupon.discount_value, total)
    else:
        discount = total * coupon.discount_value / Decimal("100")
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    # Clamp after rounding: a sub-cent total can round the discount above it.
    discount = min(quantize(max(discount, Decimal("0"))), total)
    final_price = max(Decimal("0"), quantize(total - discount))
    return DiscountResult(
        code=coupon.code,
        pre_discount_total=total,
        discount=discount,
        final_price=final_price,
        is_free=final_price == 0,
    )


class DiscountCalculator:
    def __init__(self, coupons: CouponsAPI, checker: AccessChecker):
        self._coupons = coupons
        self._checker = checker

    async def calculate(
        self,
        total: Decimal,
        code: Optional[str],
        wallet_address: Optional[str],
        collection_ids: list[str],
    ) -> DiscountResult:
        if not code or not code.strip():
            return DiscountResult.no_coupon(total)
        code = code.strip().upper()
        if not wallet_address:
            raise CouponError("Connect your wallet to use a coupon", code="coupon_requires_wallet")

        coupon = await self._coupons.validate_coupon(code, wallet_address, collection_ids)

        if coupon.collection_scope and not coupon.collection_scope.intersection(collection_ids):
            raise CouponError("This coupon is not valid for these products", code="coupon_out_of_scope")

        if coupon.eligibility_rules is not None and not coupon.eligibility_rules.empty:
            access = await evaluate_rules(self._checker, wallet_address, coupon.eligibility_rules)
            if not access.is_valid:
                raise CouponError(access.error or "You are not eligible for this coupon", code="coupon_ineligible")

        result = compute_discount(total, coupon)
        logger.info("Coupon %s applied: -%s of %s", coupon.code, result.discount, result.pre_discount_total)
        return result
