"""
Checkout configuration.

Read from ``~/.storefront/config.json``; ``STOREFRONT_*`` environment
variables override the file.
"""

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from storefront_checkout.transport.http import DEFAULT_API_PREFIX, DEFAULT_BASE_URL

CONFIG_FILE = Path.home() / ".storefront" / "config.json"
ENV_PREFIX = "STOREFRONT_"


class RailTiming(BaseModel):
    """Settlement polling budget for one rail."""
    poll_interval: float
    max_attempts: int
    timeout: float
    initial_delay: float = 0.0
    submit_timeout: float = 120.0


def _default_timings() -> dict[str, RailTiming]:
    return {
        "default": RailTiming(poll_interval=2.0, max_attempts=15, timeout=30.0, initial_delay=1.0),
        "spl_token": RailTiming(poll_interval=2.0, max_attempts=15, timeout=30.0, initial_delay=1.0),
        "card": RailTiming(poll_interval=3.0, max_attempts=200, timeout=600.0, submit_timeout=900.0),
        "cross_chain": RailTiming(poll_interval=10.0, max_attempts=120, timeout=1200.0, initial_delay=5.0),
    }


class CheckoutConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    api_prefix: str = DEFAULT_API_PREFIX
    access_token: Optional[str] = None
    http_timeout: float = 30.0

    eligibility_ttl: float = 3600.0
    verification_timeout: float = 30.0
    card_minimum: Decimal = Decimal("0.50")
    max_rail_retries: int = 2
    rail_retry_delay: float = 1.0
    ledger_create_retries: int = 3
    ledger_timeout: float = 30.0
    quote_ttl: float = 30.0
    swap_slippage_bps: int = 300
    rail_timings: dict[str, RailTiming] = Field(default_factory=_default_timings)

    price_feed_url: str = "https://api.coingecko.com/api/v3"
    swap_aggregator_url: str = "https://quote-api.jup.ag/v6"
    bridge_url: str = "https://dln.debridge.finance/v1.0"
    merchant_token_price_id: Optional[str] = None

    def timing_for(self, kind: str) -> RailTiming:
        return self.rail_timings.get(kind) or _default_timings()[kind]


_ENV_FIELDS = {
    "BASE_URL": "base_url",
    "API_PREFIX": "api_prefix",
    "ACCESS_TOKEN": "access_token",
    "HTTP_TIMEOUT": "http_timeout",
    "ELIGIBILITY_TTL": "eligibility_ttl",
    "MAX_RAIL_RETRIES": "max_rail_retries",
}


def _load_file(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def load_config(path: Optional[Path] = None, env: Optional[dict[str, str]] = None) -> CheckoutConfig:
    data = _load_file(path or CONFIG_FILE)
    env = os.environ if env is None else env
    for suffix, field in _ENV_FIELDS.items():
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value:
            data[field] = value
    return CheckoutConfig.model_validate(data)


def save_config(cfg: CheckoutConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(cfg.model_dump_json(indent=2, exclude_defaults=True))
