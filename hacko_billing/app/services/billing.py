"""Application wiring for the billing and access services."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingService,
    EntitlementGrantService,
    EntitlementInvalidator,
    OrderService,
    PaymentVerifier,
    SubscriptionService,
    VoucherService,
    WebhookIngestor,
    build_payment_provider,
)
from ..billing.repository import PostgresBillingRepository
from ..config import BillingConfig, load_billing_config
from ..entitlements import (
    AccessDecisionService,
    EntitlementCatalog,
    EntitlementReader,
    InMemoryAccessDecisionCache,
    build_plan_products,
    plan_hierarchy_from_config,
)
from ..entitlements.repository import PostgresEntitlementRepository


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s purchase=%s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.purchase_id,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


class AccessCacheInvalidator(EntitlementInvalidator):
    """Drops cached access decisions when grants change."""

    def __init__(self, access: AccessDecisionService) -> None:
        self._access = access

    def invalidate_content(self, content_type: str, content_id: str) -> None:
        self._access.invalidate_content(content_type, content_id)

    def invalidate_user(self, user_id: str) -> None:
        self._access.invalidate_user(user_id)


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def build_access_service(
    config: BillingConfig,
    repository: EntitlementReader,
    *,
    cache: Optional[InMemoryAccessDecisionCache] = None,
) -> AccessDecisionService:
    if cache is None and config.access_cache_ttl_seconds > 0:
        cache = InMemoryAccessDecisionCache(
            ttl_seconds=config.access_cache_ttl_seconds,
            max_entries=config.access_cache_max_entries,
        )
    catalog = EntitlementCatalog(repository, free_content_types=config.free_content_types)
    return AccessDecisionService(
        repository,
        catalog,
        plan_hierarchy_from_config(config),
        cache=cache,
    )


def build_billing_service(
    config: BillingConfig,
    *,
    billing_repository=None,
    entitlement_repository=None,
    provider=None,
    event_logger: Optional[BillingEventLogger] = None,
    cache: Optional[InMemoryAccessDecisionCache] = None,
) -> BillingService:
    """Assemble the billing flows; collaborators can be swapped for tests."""

    billing_repository = billing_repository or PostgresBillingRepository()
    entitlement_repository = entitlement_repository or PostgresEntitlementRepository()
    provider = provider or build_payment_provider(config)
    event_logger = event_logger or LoggingBillingEventLogger()

    access = build_access_service(config, entitlement_repository, cache=cache)
    plan_products = build_plan_products(config)
    grants = EntitlementGrantService(
        repository=billing_repository,
        grants=entitlement_repository,
        invalidator=AccessCacheInvalidator(access),
        event_logger=event_logger,
        plan_products=plan_products,
    )
    orders = OrderService(
        repository=billing_repository,
        provider=provider,
        access=access,
        event_logger=event_logger,
        plan_products=plan_products,
        currency=config.currency,
        allow_override_below_catalog=config.allow_override_below_catalog,
    )
    verifier = PaymentVerifier(
        repository=billing_repository,
        provider=provider,
        grants=grants,
        event_logger=event_logger,
        currency=config.currency,
    )
    webhooks = WebhookIngestor(
        repository=billing_repository,
        grants=grants,
        event_logger=event_logger,
        webhook_secret=config.webhook_secret,
        currency=config.currency,
    )
    subscriptions = SubscriptionService(
        repository=billing_repository,
        provider=provider,
        access=access,
        grants=grants,
        event_logger=event_logger,
        plan_products=plan_products,
        currency=config.currency,
        period=config.subscription_period,
        total_count=config.subscription_total_count,
    )
    vouchers = VoucherService(
        repository=billing_repository,
        grants=grants,
        event_logger=event_logger,
    )
    return BillingService(
        repository=billing_repository,
        grant_repository=entitlement_repository,
        provider=provider,
        access=access,
        orders=orders,
        verifier=verifier,
        webhooks=webhooks,
        grants=grants,
        subscriptions=subscriptions,
        vouchers=vouchers,
        plan_products=plan_products,
        currency=config.currency,
        subscription_period=config.subscription_period,
    )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    if config.mock_mode:
        logger.warning("Razorpay mock mode is enabled; no real payments will be taken")
    elif not config.has_credentials:
        logger.warning("Razorpay credentials are not configured; order creation will fail")
    return build_billing_service(config)


__all__ = [
    "AccessCacheInvalidator",
    "LoggingBillingEventLogger",
    "build_access_service",
    "build_billing_service",
    "get_billing_config",
    "get_billing_service",
]
