"""
Eligibility verification — re-checks item access rules against the catalog
service just before an order is created.

Rule groups are AND-ed together; inside a group the operator decides whether
every rule (AND) or any rule (OR) must pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from pydantic import BaseModel

from storefront_checkout.errors import EligibilityError, TransportError, ValidationError
from storefront_checkout.models.cart import CartLine, EligibilityGroup, EligibilityRule, EligibilityRules
from storefront_checkout.transport.http import HttpClient

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 3600.0


class AccessResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None


class AccessChecker(Protocol):
    async def verify_access(self, wallet_address: str, rule: EligibilityRule) -> AccessResult: ...


class CatalogAPI:
    """Catalog / eligibility service."""

    def __init__(self, http: HttpClient):
        self._http = http

    async def verify_access(self, wallet_address: str, rule: EligibilityRule) -> AccessResult:
        data = await self._http.post("/verify-access", {
            "walletAddress": wallet_address,
            "rule": rule.model_dump(),
        })
        return AccessResult(is_valid=bool(data.get("isValid")), error=data.get("error"))


@dataclass(frozen=True)
class LineVerification:
    item_id: str
    item_name: str
    verified: bool
    checked_at: float
    error: Optional[str] = None


def shorten_address(address: Optional[str]) -> str:
    if not address:
        return "-"
    return f"{address[:4]}..{address[-4:]}" if len(address) > 10 else address


async def evaluate_rules(
    checker: AccessChecker,
    wallet_address: str,
    rules: EligibilityRules,
) -> AccessResult:
    """Evaluate grouped rules for one wallet."""
    results = await asyncio.gather(*(
        _evaluate_group(checker, wallet_address, group) for group in rules.groups if group.rules
    ))
    for result in results:
        if not result.is_valid:
            return result
    return AccessResult(is_valid=True)


async def _evaluate_group(checker: AccessChecker, wallet_address: str, group: EligibilityGroup) -> AccessResult:
    outcomes = await asyncio.gather(*(_check_rule(checker, wallet_address, rule) for rule in group.rules))
    if group.operator == "AND":
        failed = next((o for o in outcomes if not o.is_valid), None)
        return failed or AccessResult(is_valid=True)
    if any(o.is_valid for o in outcomes):
        return AccessResult(is_valid=True)
    return AccessResult(is_valid=False, error="None of the requirements were met")


async def _check_rule(checker: AccessChecker, wallet_address: str, rule: EligibilityRule) -> AccessResult:
    try:
        return await checker.verify_access(wallet_address, rule)
    except TransportError as e:
        # An unreachable catalog counts as "not verified", never as eligible.
        logger.error("Access check for %s rule failed: %s", rule.type, e)
        return AccessResult(is_valid=False, error="Failed to verify access")


class EligibilityVerifier:
    def __init__(
        self,
        checker: AccessChecker,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._checker = checker
        self._ttl_s = ttl_s
        self._clock = clock
        self._cache: dict[tuple[str, str], LineVerification] = {}

    def _cached(self, wallet_address: str, item_id: str) -> Optional[LineVerification]:
        entry = self._cache.get((wallet_address, item_id))
        if entry is None:
            return None
        if self._clock() - entry.checked_at >= self._ttl_s:
            del self._cache[(wallet_address, item_id)]
            return None
        return entry

    def invalidate(self, wallet_address: Optional[str] = None) -> None:
        if wallet_address is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == wallet_address]:
            del self._cache[key]

    async def verify_line(self, line: CartLine, wallet_address: Optional[str]) -> LineVerification:
        now = self._clock()
        if not line.has_rules:
            return LineVerification(line.item_id, line.display_name, True, now)
        if not wallet_address:
            return LineVerification(
                line.item_id, line.display_name, False, now,
                error="Please connect your wallet to purchase this item",
            )

        cached = self._cached(wallet_address, line.item_id)
        if cached is not None:
            return cached

        result = await evaluate_rules(self._checker, wallet_address, line.eligibility_rules)  # type: ignore[arg-type]
        verification = LineVerification(
            line.item_id, line.display_name, result.is_valid, self._clock(), result.error,
        )
        # Only successful checks are reused; a failure is re-checked next time.
        if verification.verified:
            self._cache[(wallet_address, line.item_id)] = verification
        return verification

    async def verify_cart(self, lines: list[CartLine], wallet_address: Optional[str]) -> list[LineVerification]:
        return list(await asyncio.gather(*(self.verify_line(line, wallet_address) for line in lines)))

    async def ensure_eligible(self, lines: list[CartLine], wallet_address: Optional[str]) -> list[LineVerification]:
        """Verify every line; raise naming all ineligible items."""
        if not lines:
            raise ValidationError("Your cart is empty", code="empty_cart")
        verifications = await self.verify_cart(lines, wallet_address)
        failed = [v for v in verifications if not v.verified]
        if failed:
            logger.info(
                "Eligibility failed for %d item(s), wallet %s",
                len(failed), shorten_address(wallet_address),
            )
            raise EligibilityError(
                [v.item_name for v in failed],
                {v.item_name: v.error or "Access denied" for v in failed},
            )
        return verifications
