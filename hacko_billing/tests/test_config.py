from __future__ import annotations

import pytest

from hacko_billing.app.config import load_billing_config
from hacko_billing.app.entitlements import build_plan_products


def test_defaults_without_environment():
    config = load_billing_config(env={})

    assert config.has_credentials is False
    assert config.mock_mode is False
    assert config.currency == "INR"
    assert config.plan_tiers == ("free", "hifi", "sify")
    assert config.plan_prices == {"hifi": 1, "sify": 1}
    assert config.free_content_types == ("challenge",)
    assert config.access_cache_ttl_seconds == 30
    assert config.access_cache_max_entries == 10_000
    assert config.api_base_url == "https://api.razorpay.com/v1"
    assert config.provider_timeout_seconds == 10.0
    assert config.subscription_period == "monthly"
    assert config.subscription_total_count == 120
    assert config.allow_override_below_catalog is True


@pytest.mark.parametrize("variable", ["RAZORPAY_KEY_SECRET", "RAZORPAY_SECRET", "RAZORPAY_SECRET_KEY", "RAZORPAY_KEY"])
def test_key_secret_fallbacks(variable):
    config = load_billing_config(env={"RAZORPAY_KEY_ID": "rzp_live_x", variable: "s3cret"})

    assert config.key_secret == "s3cret"
    assert config.has_credentials is True


def test_mock_mode_and_tiers_are_parsed():
    config = load_billing_config(
        env={
            "RAZORPAY_MOCK_MODE": "1",
            "PLAN_TIERS": "Basic, Pro, Team",
            "PLAN_PRICES": "pro=299,team=899",
            "ACCESS_CACHE_TTL_SECONDS": "0",
            "RAZORPAY_API_BASE": "http://localhost:9000/v1/",
        }
    )

    assert config.mock_mode is True
    assert config.plan_tiers == ("basic", "pro", "team")
    assert config.plan_prices == {"pro": 299, "team": 899}
    assert config.access_cache_ttl_seconds == 0
    assert config.api_base_url == "http://localhost:9000/v1"


@pytest.mark.parametrize(
    "env",
    [
        {"PLAN_PRICES": "gold=100"},
        {"PLAN_PRICES": "hifi"},
        {"PLAN_PRICES": "hifi=0"},
        {"PLAN_TIERS": "free,free"},
        {"PROVIDER_TIMEOUT_SECONDS": "0"},
        {"ACCESS_CACHE_TTL_SECONDS": "soon"},
        {"SUBSCRIPTION_PERIOD": "fortnightly"},
        {"SUBSCRIPTION_TOTAL_COUNT": "0"},
    ],
)
def test_invalid_values_raise(env):
    with pytest.raises(ValueError):
        load_billing_config(env=env)


def test_plan_products_skip_the_lowest_tier():
    config = load_billing_config(env={"PLAN_PRICES": "hifi=499,sify=999"})

    products = build_plan_products(config)

    assert sorted(products) == ["hifi", "sify"]
    assert products["sify"].price_units == 999
    assert products["hifi"].product_id == "hifi"


def test_subscription_and_override_settings_are_parsed():
    config = load_billing_config(
        env={
            "SUBSCRIPTION_PERIOD": " Yearly ",
            "SUBSCRIPTION_TOTAL_COUNT": "12",
            "ALLOW_PRICE_OVERRIDE_BELOW_CATALOG": "no",
        }
    )

    assert config.subscription_period == "yearly"
    assert config.subscription_total_count == 12
    assert config.allow_override_below_catalog is False
