"""Eligibility verification: rule groups, caching and failure reporting."""

import json

import httpx
import pytest

from fakes import BUYER, FakeChecker, make_line
from storefront_checkout.eligibility import CatalogAPI, EligibilityVerifier, evaluate_rules, shorten_address
from storefront_checkout.errors import EligibilityError, TransportError, ValidationError
from storefront_checkout.models.cart import EligibilityRule, EligibilityRules
from storefront_checkout.transport.http import HttpClient


def _rules(*groups) -> EligibilityRules:
    return EligibilityRules.model_validate({"groups": [
        {"operator": op, "rules": [{"type": "token", "value": v} for v in values]} for op, values in groups
    ]})


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestEvaluateRules:
    @pytest.mark.asyncio
    async def test_and_group_reports_first_failure(self):
        checker = FakeChecker({"A": True})
        result = await evaluate_rules(checker, BUYER, _rules(("AND", ["A", "B"])))
        assert not result.is_valid
        assert result.error == "Requires B"

    @pytest.mark.asyncio
    async def test_or_group_needs_one(self):
        assert (await evaluate_rules(FakeChecker({"B": True}), BUYER, _rules(("OR", ["A", "B"])))).is_valid

        result = await evaluate_rules(FakeChecker(), BUYER, _rules(("OR", ["A", "B"])))
        assert not result.is_valid
        assert result.error == "None of the requirements were met"

    @pytest.mark.asyncio
    async def test_groups_are_and_ed(self):
        checker = FakeChecker({"A": True})
        result = await evaluate_rules(checker, BUYER, _rules(("OR", ["A"]), ("OR", ["C"])))
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_unreachable_catalog_is_not_eligible(self):
        checker = FakeChecker(error=TransportError("connection refused", retryable=True))
        result = await evaluate_rules(checker, BUYER, _rules(("AND", ["A"])))
        assert not result.is_valid
        assert result.error == "Failed to verify access"


class TestEligibilityVerifier:
    @pytest.mark.asyncio
    async def test_lines_without_rules_need_no_checks(self):
        checker = FakeChecker()
        verification = await EligibilityVerifier(checker).verify_line(make_line(), None)
        assert verification.verified
        assert checker.calls == []

    @pytest.mark.asyncio
    async def test_gated_line_needs_wallet(self):
        line = make_line(rules={"groups": [{"rules": [{"type": "nft", "value": "X"}]}]})
        verification = await EligibilityVerifier(FakeChecker({"X": True})).verify_line(line, None)
        assert not verification.verified
        assert "connect your wallet" in verification.error

    @pytest.mark.asyncio
    async def test_successes_are_cached_until_ttl(self):
        clock = FakeClock()
        checker = FakeChecker({"X": True})
        verifier = EligibilityVerifier(checker, ttl_s=60, clock=clock)
        line = make_line(rules={"groups": [{"rules": [{"type": "nft", "value": "X"}]}]})

        await verifier.verify_line(line, BUYER)
        await verifier.verify_line(line, BUYER)
        assert len(checker.calls) == 1

        clock.now += 61
        await verifier.verify_line(line, BUYER)
        assert len(checker.calls) == 2

        verifier.invalidate(BUYER)
        await verifier.verify_line(line, BUYER)
        assert len(checker.calls) == 3

    @pytest.mark.asyncio
    async def test_failures_are_rechecked(self):
        checker = FakeChecker()
        verifier = EligibilityVerifier(checker)
        line = make_line(rules={"groups": [{"rules": [{"type": "nft", "value": "X"}]}]})

        assert not (await verifier.verify_line(line, BUYER)).verified
        checker.allowed["X"] = True
        assert (await verifier.verify_line(line, BUYER)).verified
        assert len(checker.calls) == 2

    @pytest.mark.asyncio
    async def test_ensure_eligible_names_every_failed_item(self):
        gated = {"groups": [{"rules": [{"type": "whitelist", "value": "list-1"}]}]}
        cart = [
            make_line("a", rules=gated, item_name="Hoodie"),
            make_line("b", rules=gated, item_name="Cap"),
            make_line("c", item_name="Sticker"),
        ]
        with pytest.raises(EligibilityError) as exc_info:
            await EligibilityVerifier(FakeChecker()).ensure_eligible(cart, BUYER)
        assert exc_info.value.item_names == ["Hoodie", "Cap"]
        assert "Hoodie, Cap" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_empty_cart(self):
        with pytest.raises(ValidationError):
            await EligibilityVerifier(FakeChecker()).ensure_eligible([], BUYER)


@pytest.mark.asyncio
async def test_catalog_api_posts_rule():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path.endswith("/verify-access")
        assert body["rule"] == {"type": "nft", "value": "COLL", "quantity": 2}
        return httpx.Response(200, json={"isValid": False, "error": "Need 2 NFTs"})

    api = CatalogAPI(HttpClient(base_url="https://store.test", transport=httpx.MockTransport(handler)))
    result = await api.verify_access(BUYER, EligibilityRule(type="nft", value="COLL", quantity=2))
    assert not result.is_valid
    assert result.error == "Need 2 NFTs"


def test_shorten_address():
    assert shorten_address("ABCDEFGHIJKLMNOP") == "ABCD..MNOP"
    assert shorten_address("short") == "short"
    assert shorten_address(None) == "-"
