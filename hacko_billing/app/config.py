"""Billing and entitlement configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

SUBSCRIPTION_PERIODS = frozenset({"daily", "weekly", "monthly", "yearly"})


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment provider and access decisions."""

    key_id: Optional[str]
    key_secret: Optional[str]
    webhook_secret: Optional[str]
    mock_mode: bool
    api_base_url: str
    provider_timeout_seconds: float
    currency: str
    plan_tiers: Tuple[str, ...]
    plan_prices: Dict[str, int] = field(default_factory=dict)
    free_content_types: Tuple[str, ...] = ("challenge",)
    access_cache_ttl_seconds: int = 30
    access_cache_max_entries: int = 10_000
    admin_token: Optional[str] = None
    debug: bool = False
    allow_override_below_catalog: bool = True
    subscription_period: str = "monthly"
    subscription_total_count: int = 120

    @property
    def has_credentials(self) -> bool:
        return bool(self.key_id and self.key_secret)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_list(value: Optional[str], *, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None or not value.strip():
        return default
    items = tuple(item.strip().lower() for item in value.split(",") if item.strip())
    return items or default


def _parse_plan_prices(value: Optional[str], tiers: Tuple[str, ...]) -> Dict[str, int]:
    """Parse ``tier=units`` pairs, e.g. ``hifi=499,sify=999``."""

    if value is None or not value.strip():
        return {tier: 1 for tier in tiers[1:]}

    prices: Dict[str, int] = {}
    for pair in value.split(","):
        if not pair.strip():
            continue
        tier, sep, raw_amount = pair.partition("=")
        if not sep:
            raise ValueError(f"Invalid PLAN_PRICES entry {pair!r}; expected tier=amount")
        tier = tier.strip().lower()
        if tier not in tiers:
            raise ValueError(f"PLAN_PRICES references unknown tier {tier!r}")
        amount = _to_int(raw_amount.strip(), default=0)
        if amount <= 0:
            raise ValueError(f"PLAN_PRICES amount for {tier!r} must be positive")
        prices[tier] = amount
    return prices


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    key_secret = (
        env_mapping.get("RAZORPAY_KEY_SECRET")
        or env_mapping.get("RAZORPAY_SECRET")
        or env_mapping.get("RAZORPAY_SECRET_KEY")
        or env_mapping.get("RAZORPAY_KEY")
    )
    plan_tiers = _to_list(env_mapping.get("PLAN_TIERS"), default=("free", "hifi", "sify"))
    if len(set(plan_tiers)) != len(plan_tiers):
        raise ValueError("PLAN_TIERS must not contain duplicates")

    period = (env_mapping.get("SUBSCRIPTION_PERIOD") or "monthly").strip().lower()
    if period not in SUBSCRIPTION_PERIODS:
        raise ValueError(f"SUBSCRIPTION_PERIOD must be one of {sorted(SUBSCRIPTION_PERIODS)}")
    total_count = _to_int(env_mapping.get("SUBSCRIPTION_TOTAL_COUNT"), default=120)
    if total_count < 1:
        raise ValueError("SUBSCRIPTION_TOTAL_COUNT must be positive")

    timeout = _to_float(env_mapping.get("PROVIDER_TIMEOUT_SECONDS"), default=10.0)
    if timeout <= 0:
        raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive")

    return BillingConfig(
        key_id=env_mapping.get("RAZORPAY_KEY_ID") or None,
        key_secret=key_secret or None,
        webhook_secret=env_mapping.get("RAZORPAY_WEBHOOK_SECRET") or None,
        mock_mode=_to_bool(env_mapping.get("RAZORPAY_MOCK_MODE"), default=False),
        api_base_url=(env_mapping.get("RAZORPAY_API_BASE") or "https://api.razorpay.com/v1").rstrip("/"),
        provider_timeout_seconds=timeout,
        currency=(env_mapping.get("BILLING_CURRENCY") or "INR").strip().upper(),
        plan_tiers=plan_tiers,
        plan_prices=_parse_plan_prices(env_mapping.get("PLAN_PRICES"), plan_tiers),
        free_content_types=_to_list(env_mapping.get("FREE_CONTENT_TYPES"), default=("challenge",)),
        access_cache_ttl_seconds=max(_to_int(env_mapping.get("ACCESS_CACHE_TTL_SECONDS"), default=30), 0),
        access_cache_max_entries=max(_to_int(env_mapping.get("ACCESS_CACHE_MAX_ENTRIES"), default=10_000), 1),
        admin_token=env_mapping.get("BILLING_ADMIN_TOKEN") or None,
        debug=_to_bool(env_mapping.get("DEBUG_PURCHASE"), default=False),
        allow_override_below_catalog=_to_bool(
            env_mapping.get("ALLOW_PRICE_OVERRIDE_BELOW_CATALOG"), default=True
        ),
        subscription_period=period,
        subscription_total_count=total_count,
    )


__all__ = ["BillingConfig", "load_billing_config"]
