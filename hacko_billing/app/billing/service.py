"""Core service coordinating billing flows with the payment provider."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from ..entitlements.catalog import PlanProduct
from ..entitlements.models import AccessDecision, ContentGrant, PlanGrant
from ..entitlements.service import AccessDecisionService
from .grants import EntitlementGrantService
from .models import (
    CancellationResult,
    CatalogListing,
    CatalogPlan,
    OrderResult,
    OrderTarget,
    Purchase,
    Subscription,
    SubscriptionResult,
    VerificationResult,
    VoucherRedemption,
    WebhookReceipt,
)
from .orders import OrderService
from .protocols import BillingRepository, GrantRepository
from .provider import PaymentProvider
from .subscriptions import SubscriptionService
from .verification import PaymentVerifier
from .vouchers import VoucherService
from .webhooks import WebhookIngestor


@dataclass
class BillingService:
    """Single entry point used by the HTTP layer."""

    repository: BillingRepository
    grant_repository: GrantRepository
    provider: PaymentProvider
    access: AccessDecisionService
    orders: OrderService
    verifier: PaymentVerifier
    webhooks: WebhookIngestor
    grants: EntitlementGrantService
    subscriptions: SubscriptionService
    vouchers: VoucherService
    plan_products: Dict[str, PlanProduct] = field(default_factory=dict)
    currency: str = "INR"
    subscription_period: str = "monthly"

    def decide(self, user_id: Optional[str], content_type: str, content_id: str) -> AccessDecision:
        return self.access.decide(user_id, content_type, content_id)

    def create_order(self, user_id: str, target: OrderTarget) -> OrderResult:
        return self.orders.create_order(user_id, target)

    def verify_payment(
        self,
        user_id: str,
        *,
        order_id: Optional[str],
        payment_id: Optional[str],
        signature: Optional[str],
        content_type: Optional[str] = None,
        content_id: Optional[str] = None,
    ) -> VerificationResult:
        return self.verifier.verify(
            user_id,
            order_id=order_id,
            payment_id=payment_id,
            signature=signature,
            content_type=content_type,
            content_id=content_id,
        )

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id_header: Optional[str] = None,
    ) -> WebhookReceipt:
        return self.webhooks.handle(raw_body, signature, event_id_header)

    def reprocess_pending_events(self, *, limit: int = 25) -> List[WebhookReceipt]:
        return self.webhooks.reprocess_pending(limit=limit)

    def create_subscription(self, user_id: str, plan: str) -> SubscriptionResult:
        return self.subscriptions.create_subscription(user_id, plan)

    def cancel_subscription(self, user_id: str, subscription_id: str) -> CancellationResult:
        return self.subscriptions.cancel_subscription(user_id, subscription_id)

    def redeem_voucher(self, user_id: str, code: str) -> VoucherRedemption:
        return self.vouchers.redeem(user_id, code)

    def list_catalog(self) -> CatalogListing:
        hierarchy = self.access.hierarchy
        products = sorted(self.plan_products.values(), key=lambda product: hierarchy.rank(product.tier))
        return CatalogListing(
            tiers=list(hierarchy.tiers),
            plans=[
                CatalogPlan(
                    tier=product.tier,
                    price_units=product.price_units,
                    amount=product.price_units * 100,
                    currency=self.currency,
                    period=self.subscription_period,
                )
                for product in products
            ],
            currency=self.currency,
            mock=self.provider.mock,
        )

    def list_purchases(self, user_id: str, *, limit: int = 20) -> Sequence[Purchase]:
        return self.repository.list_purchases(user_id, limit=limit)

    def list_subscriptions(self, user_id: str, *, limit: int = 20) -> Sequence[Subscription]:
        return self.repository.list_subscriptions(user_id, limit=limit)

    def list_content_grants(self, user_id: str, *, limit: int = 100) -> Sequence[ContentGrant]:
        return self.grant_repository.list_content_grants(user_id, limit=limit)

    def list_plan_grants(self, user_id: str) -> Sequence[PlanGrant]:
        return self.grant_repository.list_plan_grants(user_id, now=datetime.now(timezone.utc))

    @property
    def mock_mode(self) -> bool:
        return self.provider.mock


__all__ = ["BillingService"]
