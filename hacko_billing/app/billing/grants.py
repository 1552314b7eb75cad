"""Creates and revokes durable access grants from settled payments."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Union

from ..entitlements.catalog import PlanProduct, tier_for_product
from ..entitlements.models import ContentGrant, GrantOrigin, PlanGrant
from .errors import PurchaseStateError
from .models import BillingAuditEvent, BillingAuditEventType, PurchaseStatus, Voucher
from .protocols import BillingEventLogger, BillingRepository, EntitlementInvalidator, GrantRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EntitlementGrantService:
    """Turns paid purchases and active subscriptions into grants.

    Grants are keyed by their origin (purchase id, or subscription id for
    plan grants), so repeated grants for the same origin collapse into one
    row and revoking one origin never touches grants from another.
    """

    repository: BillingRepository
    grants: GrantRepository
    invalidator: EntitlementInvalidator
    event_logger: BillingEventLogger
    plan_products: Dict[str, PlanProduct] = field(default_factory=dict)
    clock: Callable[[], datetime] = _utcnow

    def grant_purchase(self, purchase_id: str) -> Union[ContentGrant, PlanGrant]:
        purchase = self.repository.get_purchase(purchase_id)
        if purchase is None:
            raise PurchaseStateError(f"Purchase {purchase_id} does not exist")
        if purchase.status != PurchaseStatus.PAID:
            raise PurchaseStateError(
                f"Purchase {purchase_id} is {purchase.status.value}, not paid",
                detail={"purchase_id": purchase_id, "status": purchase.status.value},
            )

        granted: Union[ContentGrant, PlanGrant]
        if purchase.is_content_purchase:
            price_paid = purchase.price_paid if purchase.price_paid is not None else purchase.amount_total // 100
            granted = self.grants.upsert_content_grant(
                ContentGrant(
                    user_id=purchase.user_id,
                    content_type=purchase.content_type,
                    content_id=purchase.content_id,
                    origin_purchase_id=purchase.id,
                    price_paid=price_paid,
                    currency=purchase.currency,
                    payment_ref=purchase.provider_payment_id,
                )
            )
            self.invalidator.invalidate_content(purchase.content_type, purchase.content_id)
        else:
            tier = tier_for_product(self.plan_products, purchase.product_id)
            if tier is None:
                raise PurchaseStateError(
                    f"Purchase {purchase_id} references unknown plan {purchase.product_id!r}"
                )
            granted = self.grants.upsert_plan_grant(
                PlanGrant(
                    user_id=purchase.user_id,
                    tier=tier,
                    origin=GrantOrigin.PURCHASE,
                    origin_id=purchase.id,
                )
            )
            self.invalidator.invalidate_user(purchase.user_id)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ENTITLEMENT_GRANTED,
                actor_id=purchase.user_id,
                purchase_id=purchase.id,
                metadata={"grant_id": str(granted.id or "")},
            )
        )
        return granted

    def grant_subscription(self, subscription_id: str, duration_days: int) -> PlanGrant:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise PurchaseStateError(f"Subscription {subscription_id} does not exist")
        tier = tier_for_product(self.plan_products, subscription.product_id)
        if tier is None:
            raise PurchaseStateError(
                f"Subscription {subscription_id} references unknown plan {subscription.product_id!r}"
            )

        expires_at = self.clock() + timedelta(days=max(1, duration_days))
        granted = self.grants.upsert_plan_grant(
            PlanGrant(
                user_id=subscription.user_id,
                tier=tier,
                origin=GrantOrigin.SUBSCRIPTION,
                origin_id=subscription.id,
                expires_at=expires_at,
            )
        )
        self.invalidator.invalidate_user(subscription.user_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ENTITLEMENT_GRANTED,
                actor_id=subscription.user_id,
                subscription_id=subscription.id,
                metadata={"tier": tier, "expires_at": expires_at.isoformat()},
            )
        )
        return granted

    def grant_voucher(self, voucher: Voucher, user_id: str) -> PlanGrant:
        """Grant the voucher's tier; vouchers without a duration never expire."""

        tier = tier_for_product(self.plan_products, voucher.product_id)
        if tier is None:
            raise PurchaseStateError(f"Voucher {voucher.code} references unknown plan {voucher.product_id!r}")

        expires_at: Optional[datetime] = None
        if voucher.duration_days:
            start = voucher.redeemed_at or self.clock()
            expires_at = start + timedelta(days=voucher.duration_days)
        granted = self.grants.upsert_plan_grant(
            PlanGrant(
                user_id=user_id,
                tier=tier,
                origin=GrantOrigin.VOUCHER,
                origin_id=voucher.id,
                expires_at=expires_at,
            )
        )
        self.invalidator.invalidate_user(user_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ENTITLEMENT_GRANTED,
                actor_id=user_id,
                metadata={"tier": tier, "voucher_id": voucher.id},
            )
        )
        return granted

    def revoke_purchase(self, purchase_id: str) -> int:
        """Flag every grant that originated from one purchase."""

        now = self.clock()
        content_grants = self.grants.revoke_content_grants(purchase_id, revoked_at=now)
        plan_grants = self.grants.revoke_plan_grants(GrantOrigin.PURCHASE, purchase_id, revoked_at=now)

        for grant in content_grants:
            self.invalidator.invalidate_content(grant.content_type, grant.content_id)
        for grant in plan_grants:
            self.invalidator.invalidate_user(grant.user_id)

        revoked = len(content_grants) + len(plan_grants)
        if revoked:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ENTITLEMENT_REVOKED,
                    purchase_id=purchase_id,
                    metadata={"revoked": str(revoked)},
                )
            )
        return revoked

    def revoke_subscription(self, subscription_id: str) -> int:
        plan_grants = self.grants.revoke_plan_grants(
            GrantOrigin.SUBSCRIPTION, subscription_id, revoked_at=self.clock()
        )
        for grant in plan_grants:
            self.invalidator.invalidate_user(grant.user_id)
        if plan_grants:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ENTITLEMENT_REVOKED,
                    subscription_id=subscription_id,
                    metadata={"revoked": str(len(plan_grants))},
                )
            )
        return len(plan_grants)


__all__ = ["EntitlementGrantService"]
