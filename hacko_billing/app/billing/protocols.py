"""Collaborator protocols shared by the billing services."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..entitlements.models import ContentGrant, GrantOrigin, PlanGrant
from .models import (
    BillingAuditEvent,
    ProviderEvent,
    ProviderEventResult,
    Purchase,
    Subscription,
    SubscriptionStatus,
    Voucher,
)


class BillingRepository(Protocol):
    """Persistence operations for purchases, subscriptions and the event ledger."""

    def create_purchase(self, purchase: Purchase) -> Purchase:
        """Insert a purchase, returning the existing row for a known order id."""

    def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        ...

    def get_purchase_by_order(self, provider: str, provider_order_id: str) -> Optional[Purchase]:
        ...

    def get_purchase_by_payment(self, provider: str, provider_payment_id: str) -> Optional[Purchase]:
        ...

    def mark_purchase_paid(
        self,
        purchase_id: str,
        *,
        provider_payment_id: Optional[str],
        price_paid: int,
        paid_at: datetime,
    ) -> Optional[Purchase]:
        """Transition ``created -> paid``; ``None`` when another writer won."""

    def mark_purchase_refunded(self, purchase_id: str, *, refunded_at: datetime) -> Optional[Purchase]:
        """Transition ``paid -> refunded``; ``None`` when not currently paid."""

    def list_purchases(self, user_id: str, *, limit: int = 20) -> Sequence[Purchase]:
        ...

    def create_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_provider_id(
        self, provider: str, provider_subscription_id: str
    ) -> Optional[Subscription]:
        ...

    def update_subscription(
        self,
        subscription_id: str,
        *,
        status: Optional[SubscriptionStatus],
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
        cancel_at_period_end: Optional[bool] = None,
    ) -> Optional[Subscription]:
        ...

    def list_subscriptions(self, user_id: str, *, limit: int = 20) -> Sequence[Subscription]:
        ...

    def get_provider_plan_id(
        self,
        provider: str,
        tier: str,
        *,
        period: str,
        amount: int,
        currency: str,
    ) -> Optional[str]:
        ...

    def save_provider_plan_id(
        self,
        provider: str,
        tier: str,
        *,
        period: str,
        amount: int,
        currency: str,
        provider_plan_id: str,
    ) -> str:
        """Remember a provider plan; returns the id stored first when two writers race."""

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        ...

    def redeem_voucher(self, voucher_id: str, *, user_id: str, redeemed_at: datetime) -> Optional[Voucher]:
        """Transition ``available -> redeemed``; ``None`` when taken or expired."""

    def record_provider_event(self, event: ProviderEvent) -> Tuple[ProviderEvent, bool]:
        """Insert a ledger row; the flag is ``False`` when it already existed."""

    def refresh_provider_event(
        self,
        event_id: str,
        *,
        payload: Dict[str, Any],
        signature_valid: bool,
    ) -> Optional[ProviderEvent]:
        """Store a redelivered payload whose signature now verifies."""

    def mark_provider_event(
        self,
        event_id: str,
        *,
        result: ProviderEventResult,
        error_message: Optional[str],
        processed_at: datetime,
    ) -> Optional[ProviderEvent]:
        """Record an outcome; a row that reached ``success`` is never rewritten."""

    def list_pending_provider_events(self, *, limit: int = 25) -> Sequence[ProviderEvent]:
        ...


class GrantRepository(Protocol):
    """Write side of the entitlement store."""

    def upsert_content_grant(self, grant: ContentGrant) -> ContentGrant:
        ...

    def upsert_plan_grant(self, grant: PlanGrant) -> PlanGrant:
        ...

    def revoke_content_grants(self, origin_purchase_id: str, *, revoked_at: datetime) -> List[ContentGrant]:
        ...

    def revoke_plan_grants(
        self,
        origin: GrantOrigin,
        origin_id: str,
        *,
        revoked_at: datetime,
    ) -> List[PlanGrant]:
        ...

    def list_content_grants(self, user_id: str, *, limit: int = 100) -> List[ContentGrant]:
        ...

    def list_plan_grants(self, user_id: str, *, now: datetime) -> List[PlanGrant]:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class EntitlementInvalidator(Protocol):
    """Invalidates cached access decisions affected by billing changes."""

    def invalidate_content(self, content_type: str, content_id: str) -> None:
        ...

    def invalidate_user(self, user_id: str) -> None:
        ...


__all__ = [
    "BillingEventLogger",
    "BillingRepository",
    "EntitlementInvalidator",
    "GrantRepository",
]
