"""Starts and cancels recurring plan subscriptions at the provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict
from uuid import UUID, uuid4

from ..entitlements.catalog import PlanProduct
from ..entitlements.service import AccessDecisionService
from .errors import InvalidRequestError, SubscriptionNotFoundError
from .grants import EntitlementGrantService
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CancellationResult,
    Subscription,
    SubscriptionResult,
    SubscriptionStatus,
)
from .notes import build_subscription_notes
from .protocols import BillingEventLogger, BillingRepository
from .provider import PaymentProvider

logger = logging.getLogger("billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SubscriptionService:
    """Opens provider subscriptions and records them locally as ``incomplete``.

    Activation, renewal and expiry arrive later through webhooks; this
    service only creates the row the webhook handler will find, and asks
    the provider to stop billing when the owner cancels.
    """

    repository: BillingRepository
    provider: PaymentProvider
    access: AccessDecisionService
    grants: EntitlementGrantService
    event_logger: BillingEventLogger
    plan_products: Dict[str, PlanProduct] = field(default_factory=dict)
    currency: str = "INR"
    period: str = "monthly"
    total_count: int = 120
    provider_name: str = "razorpay"
    clock: Callable[[], datetime] = _utcnow

    def create_subscription(self, user_id: str, plan: str) -> SubscriptionResult:
        if not user_id:
            raise InvalidRequestError("MISSING_FIELDS", "An authenticated user is required.")
        hierarchy = self.access.hierarchy
        tier = (plan or "").strip().lower()
        product = self.plan_products.get(tier)
        if not hierarchy.is_known(tier) or tier == hierarchy.lowest or product is None:
            raise InvalidRequestError("INVALID_PLAN", f"Unknown plan {plan!r}.")

        if hierarchy.satisfies(self.access.effective_plan(user_id), tier):
            return SubscriptionResult(already=True, reason="ALREADY_ON_PLAN")

        plan_id = self._provider_plan_id(product)
        notes = build_subscription_notes(user_id, tier)
        provider_subscription = self.provider.create_subscription(
            plan_id=plan_id,
            total_count=self.total_count,
            notes=notes,
        )

        now = self.clock()
        subscription = self.repository.create_subscription(
            Subscription(
                id=str(uuid4()),
                user_id=user_id,
                product_id=product.product_id,
                provider=self.provider_name,
                provider_subscription_id=provider_subscription.id,
                status=SubscriptionStatus.INCOMPLETE,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Created subscription %s for user %s",
            provider_subscription.id,
            user_id,
            extra={"plan": tier, "mock": self.provider.mock},
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CREATED,
                actor_id=user_id,
                subscription_id=subscription.id,
                metadata={"plan": tier, "provider_subscription_id": provider_subscription.id},
            )
        )
        return SubscriptionResult(
            subscription_id=subscription.id,
            provider_subscription_id=provider_subscription.id,
            short_url=provider_subscription.short_url,
            status="pending_activation",
            key=self.provider.key_id,
            mock=self.provider.mock,
        )

    def cancel_subscription(self, user_id: str, subscription_id: str) -> CancellationResult:
        """Cancel at the end of the current billing cycle."""

        if not user_id or not subscription_id:
            raise InvalidRequestError("MISSING_FIELDS", "subscription_id is required.")
        try:
            UUID(subscription_id)
        except ValueError as exc:
            raise SubscriptionNotFoundError() from exc

        subscription = self.repository.get_subscription(subscription_id)
        # Someone else's subscription looks exactly like a missing one.
        if subscription is None or subscription.user_id != user_id:
            raise SubscriptionNotFoundError()
        if subscription.provider != self.provider_name:
            raise InvalidRequestError(
                "UNSUPPORTED_PROVIDER",
                f"Subscriptions with provider {subscription.provider!r} cannot be cancelled here.",
            )
        if subscription.status == SubscriptionStatus.CANCELED:
            return CancellationResult(status=subscription.status, cancel_at_period_end=False)

        cancelled = self.provider.cancel_subscription(subscription.provider_subscription_id, at_cycle_end=True)
        if (cancelled.status or "").lower() == "cancelled":
            updated = self.repository.update_subscription(
                subscription.id,
                status=SubscriptionStatus.CANCELED,
                current_period_start=None,
                current_period_end=None,
            ) or subscription
            self.grants.revoke_subscription(subscription.id)
        else:
            updated = self.repository.update_subscription(
                subscription.id,
                status=None,
                current_period_start=None,
                current_period_end=None,
                cancel_at_period_end=True,
            ) or subscription

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCEL_REQUESTED,
                actor_id=user_id,
                subscription_id=subscription.id,
                metadata={"provider_status": cancelled.status or "", "status": updated.status.value},
            )
        )
        return CancellationResult(
            status=updated.status,
            cancel_at_period_end=updated.status != SubscriptionStatus.CANCELED,
        )

    def _provider_plan_id(self, product: PlanProduct) -> str:
        amount = product.price_units * 100
        plan_id = self.repository.get_provider_plan_id(
            self.provider_name,
            product.tier,
            period=self.period,
            amount=amount,
            currency=self.currency,
        )
        if plan_id:
            return plan_id

        created = self.provider.create_plan(
            period=self.period,
            amount=amount,
            currency=self.currency,
            name=f"Plan_{product.tier}_{self.period}_{amount}",
            notes={"product_id": product.product_id},
        )
        return self.repository.save_provider_plan_id(
            self.provider_name,
            product.tier,
            period=self.period,
            amount=amount,
            currency=self.currency,
            provider_plan_id=created,
        )


__all__ = ["SubscriptionService"]
