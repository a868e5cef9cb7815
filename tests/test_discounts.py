"""Discount calculation and coupon validation."""

import json
import random
from decimal import Decimal

import httpx
import pytest

from fakes import BUYER, FakeChecker, FakeCoupons
from storefront_checkout.coupons import CouponsAPI, DiscountCalculator, compute_discount
from storefront_checkout.errors import CouponError
from storefront_checkout.models.cart import EligibilityRules
from storefront_checkout.models.coupon import Coupon
from storefront_checkout.transport.http import HttpClient


def _coupon(discount_type: str, value: str, **kwargs) -> Coupon:
    return Coupon(code="TEST", discount_type=discount_type, discount_value=Decimal(value), **kwargs)


class TestComputeDiscount:
    def test_half_off(self):
        result = compute_discount(Decimal("10.00"), _coupon("percentage", "50"))
        assert result.discount == Decimal("5.00")
        assert result.final_price == Decimal("5.00")
        assert not result.is_free

    def test_full_discount_is_free(self):
        result = compute_discount(Decimal("5.00"), _coupon("percentage", "100"))
        assert result.final_price == Decimal("0")
        assert result.is_free

    def test_fixed_discount_never_exceeds_total(self):
        result = compute_discount(Decimal("3.00"), _coupon("fixed", "10"))
        assert result.discount == Decimal("3.00")
        assert result.final_price == Decimal("0")
        assert result.is_free

    def test_percentage_is_capped(self):
        result = compute_discount(Decimal("200.00"), _coupon("percentage", "50", max_discount=Decimal("20")))
        assert result.discount == Decimal("20.00")
        assert result.final_price == Decimal("180.00")

    def test_rounds_to_cents(self):
        result = compute_discount(Decimal("9.99"), _coupon("percentage", "33"))
        assert result.discount == Decimal("3.30")
        assert result.final_price == Decimal("6.69")

    def test_discount_always_within_total(self):
        rng = random.Random(7)
        for _ in range(1000):
            total = Decimal(rng.randint(0, 100_000)) / 100
            if rng.random() < 0.5:
                coupon = _coupon("fixed", str(Decimal(rng.randint(0, 20_000)) / 100))
            else:
                cap = Decimal(rng.randint(1, 5_000)) / 100 if rng.random() < 0.3 else None
                coupon = _coupon("percentage", str(rng.randint(0, 150)), max_discount=cap)
            result = compute_discount(total, coupon)
            assert Decimal("0") <= result.discount <= total
            assert result.final_price == total - result.discount
            assert result.is_free == (result.final_price == 0)

    def test_sub_cent_totals_keep_discount_within_total(self):
        result = compute_discount(Decimal("10.005"), _coupon("fixed", "20"))
        assert result.discount == Decimal("10.005")
        assert result.final_price == Decimal("0")
        assert result.is_free

        rng = random.Random(11)
        for _ in range(1000):
            total = Decimal(rng.randint(0, 1_000_000)) / 1000
            if rng.random() < 0.5:
                coupon = _coupon("fixed", str(Decimal(rng.randint(0, 20_000)) / 100))
            else:
                coupon = _coupon("percentage", str(rng.randint(0, 150)))
            result = compute_discount(total, coupon)
            assert Decimal("0") <= result.discount <= total
            assert result.final_price >= 0
            assert result.is_free == (result.final_price == 0)


class TestDiscountCalculator:
    def _calculator(self, coupons=None, allowed=None):
        return DiscountCalculator(FakeCoupons(coupons), FakeChecker(allowed))

    @pytest.mark.asyncio
    async def test_no_code_means_no_discount(self):
        result = await self._calculator().calculate(Decimal("12.00"), "  ", BUYER, [])
        assert result.code is None
        assert result.final_price == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_code_is_normalized(self):
        calculator = DiscountCalculator(FakeCoupons({"HALF": _coupon("percentage", "50")}), FakeChecker())
        result = await calculator.calculate(Decimal("10"), " half ", BUYER, [])
        assert result.final_price == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_wallet_required(self):
        with pytest.raises(CouponError) as exc_info:
            await self._calculator().calculate(Decimal("10"), "HALF", None, [])
        assert exc_info.value.code == "coupon_requires_wallet"

    @pytest.mark.asyncio
    async def test_unknown_code(self):
        with pytest.raises(CouponError) as exc_info:
            await self._calculator().calculate(Decimal("10"), "NOPE", BUYER, [])
        assert exc_info.value.code == "invalid_coupon"

    @pytest.mark.asyncio
    async def test_collection_scope(self):
        coupons = {"DROP": _coupon("fixed", "1", collection_scope=frozenset({"summer"}))}
        with pytest.raises(CouponError) as exc_info:
            await self._calculator(coupons).calculate(Decimal("10"), "DROP", BUYER, ["winter"])
        assert exc_info.value.code == "coupon_out_of_scope"

        result = await self._calculator(coupons).calculate(Decimal("10"), "DROP", BUYER, ["winter", "summer"])
        assert result.discount == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_coupon_eligibility_rules(self):
        rules = EligibilityRules.model_validate(
            {"groups": [{"operator": "OR", "rules": [{"type": "token", "value": "HOLDER"}]}]}
        )
        coupons = {"VIP": _coupon("percentage", "20", eligibility_rules=rules)}

        with pytest.raises(CouponError) as exc_info:
            await self._calculator(coupons).calculate(Decimal("10"), "VIP", BUYER, [])
        assert exc_info.value.code == "coupon_ineligible"

        result = await self._calculator(coupons, {"HOLDER": True}).calculate(Decimal("10"), "VIP", BUYER, [])
        assert result.final_price == Decimal("8.00")


def _api(handler) -> CouponsAPI:
    return CouponsAPI(HttpClient(base_url="https://store.test", transport=httpx.MockTransport(handler)))


class TestCouponsAPI:
    @pytest.mark.asyncio
    async def test_parses_coupon_snapshot(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body == {"code": "HALF", "walletAddress": BUYER, "productCollectionIds": ["c1"]}
            return httpx.Response(200, json={"valid": True, "coupon": {
                "code": "half",
                "discountType": "percentage",
                "discountValue": 50,
                "maxDiscount": 15,
                "collectionIds": ["c1"],
            }})

        coupon = await _api(handler).validate_coupon("HALF", BUYER, ["c1"])
        assert coupon.code == "HALF"
        assert coupon.discount_type == "percentage"
        assert coupon.max_discount == Decimal("15")
        assert coupon.collection_scope == frozenset({"c1"})

    @pytest.mark.asyncio
    async def test_fixed_type_variants_map_to_fixed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"valid": True, "coupon": {"discountType": "fixed_sol", "discountValue": 2}})

        coupon = await _api(handler).validate_coupon("TWO", BUYER, [])
        assert coupon.discount_type == "fixed"
        assert coupon.discount_value == Decimal("2")

    @pytest.mark.asyncio
    async def test_rejection_message_is_surfaced(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "Coupon has expired"})

        with pytest.raises(CouponError) as exc_info:
            await _api(handler).validate_coupon("OLD", BUYER, [])
        assert exc_info.value.user_message == "Coupon has expired"
