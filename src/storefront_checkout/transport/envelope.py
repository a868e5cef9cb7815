"""
Parsing of server-pushed settlement events.
"""

from typing import Any, Optional

from pydantic import ValidationError

from storefront_checkout.models.settlement import SettlementNotice


def parse_settlement_notice(raw: Any) -> Optional[SettlementNotice]:
    """Parse a ``settlement:update`` event. Returns None if invalid.

    Accepts either the bare notice or one wrapped as ``{"payload": {"data": ...}}``.
    """
    if not isinstance(raw, dict):
        return None
    data = raw
    payload = raw.get("payload")
    if isinstance(payload, dict):
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    reference = data.get("reference") or data.get("transactionSignature") or data.get("paymentIntentId")
    try:
        return SettlementNotice(
            reference=reference,
            batch_order_id=data.get("batchOrderId") or data.get("batch_order_id"),
            status=data.get("status") or "",
        )
    except ValidationError:
        return None
