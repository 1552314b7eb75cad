"""Creates provider orders for content purchases and plan upgrades."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional
from uuid import uuid4

from ..entitlements.catalog import PlanProduct
from ..entitlements.models import AccessReason
from ..entitlements.service import AccessDecisionService
from .errors import InvalidRequestError, NoPriceError
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    ContentTarget,
    OrderResult,
    OrderTarget,
    PlanTarget,
    Purchase,
    PurchaseStatus,
)
from .notes import build_content_notes, build_plan_notes
from .protocols import BillingEventLogger, BillingRepository
from .provider import PaymentProvider

logger = logging.getLogger("billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderService:
    """Prices a checkout target and opens a provider order for it."""

    repository: BillingRepository
    provider: PaymentProvider
    access: AccessDecisionService
    event_logger: BillingEventLogger
    plan_products: Dict[str, PlanProduct] = field(default_factory=dict)
    currency: str = "INR"
    provider_name: str = "razorpay"
    allow_override_below_catalog: bool = True
    clock: Callable[[], datetime] = _utcnow

    def create_order(self, user_id: str, target: OrderTarget) -> OrderResult:
        if not user_id:
            raise InvalidRequestError("MISSING_FIELDS", "An authenticated user is required.")
        if isinstance(target, PlanTarget):
            return self._create_plan_order(user_id, target)
        return self._create_content_order(user_id, target)

    def _create_content_order(self, user_id: str, target: ContentTarget) -> OrderResult:
        override = target.price_override
        if override is not None and override < 0:
            raise InvalidRequestError("INVALID_PRICE", "price_override must not be negative.")

        decision = self.access.decide(user_id, target.content_type, target.content_id)
        if decision.allow:
            return OrderResult(already=True, reason=decision.reason.value)
        if decision.reason == AccessReason.INACTIVE:
            raise InvalidRequestError("INACTIVE", "This content is not available for purchase.")

        catalog_price = decision.individual_price
        if override == 0 or catalog_price == 0:
            return OrderResult(already=True, reason="FREE")

        # Client-supplied overrides are trusted unless the deployment turns discounts off.
        if override is not None and override > 0:
            if catalog_price and override < catalog_price and not self.allow_override_below_catalog:
                raise InvalidRequestError(
                    "INVALID_PRICE",
                    "price_override must not be below the catalog price.",
                    detail={"catalog_price": catalog_price, "price_override": override},
                )
            amount_units = override
        elif catalog_price is not None and catalog_price > 0:
            amount_units = catalog_price
        else:
            raise NoPriceError(detail={"content_type": target.content_type, "content_id": target.content_id})

        notes = build_content_notes(user_id, target.content_type, target.content_id, amount_units)
        return self._place_order(
            user_id,
            amount_units,
            notes,
            content_type=target.content_type,
            content_id=target.content_id,
        )

    def _create_plan_order(self, user_id: str, target: PlanTarget) -> OrderResult:
        hierarchy = self.access.hierarchy
        plan = target.plan.strip().lower()
        product = self.plan_products.get(plan)
        if not hierarchy.is_known(plan) or plan == hierarchy.lowest or product is None:
            raise InvalidRequestError("INVALID_PLAN", f"Unknown plan {target.plan!r}.")

        current = self.access.effective_plan(user_id)
        if hierarchy.satisfies(current, plan):
            return OrderResult(already=True, reason="ALREADY_ON_PLAN")

        notes = build_plan_notes(user_id, plan, product.price_units)
        return self._place_order(user_id, product.price_units, notes, product_id=product.product_id)

    def _place_order(
        self,
        user_id: str,
        amount_units: int,
        notes: Mapping[str, str],
        *,
        content_type: Optional[str] = None,
        content_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> OrderResult:
        amount_minor = amount_units * 100
        order = self.provider.create_order(amount=amount_minor, currency=self.currency, notes=notes)

        now = self.clock()
        purchase = self.repository.create_purchase(
            Purchase(
                id=str(uuid4()),
                user_id=user_id,
                provider=self.provider_name,
                provider_order_id=order.id,
                status=PurchaseStatus.CREATED,
                content_type=content_type,
                content_id=content_id,
                product_id=product_id,
                amount_total=amount_minor,
                currency=self.currency,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Created order %s for user %s",
            order.id,
            user_id,
            extra={"amount_units": amount_units, "mock": self.provider.mock},
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ORDER_CREATED,
                actor_id=user_id,
                purchase_id=purchase.id,
                metadata={"order_id": order.id, "amount_units": str(amount_units)},
            )
        )
        return OrderResult(
            order_id=order.id,
            amount=amount_minor,
            currency=self.currency,
            amount_units=amount_units,
            key=self.provider.key_id,
            mock=self.provider.mock,
            purchase_id=purchase.id,
        )


__all__ = ["OrderService"]
