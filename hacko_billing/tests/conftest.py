"""Shared fakes and fixtures for the billing and access tests."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from hacko_billing.app.billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingRepository,
    GrantRepository,
    PaymentProvider,
    ProviderEvent,
    ProviderEventResult,
    ProviderOrder,
    ProviderSubscription,
    ProviderUnavailableError,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    Voucher,
    VoucherStatus,
)
from hacko_billing.app.billing.provider import (
    compute_payment_signature,
    compute_webhook_signature,
    verify_payment_signature,
)
from hacko_billing.app.config import load_billing_config
from hacko_billing.app.entitlements import (
    AccessSnapshot,
    ContentEntitlementRule,
    ContentGrant,
    EntitlementReader,
    GrantOrigin,
    InMemoryAccessDecisionCache,
    PlanGrant,
    SnapshotUnavailableError,
)
from hacko_billing.app.services.billing import build_billing_service

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"


class InMemoryEntitlementStore(EntitlementReader, GrantRepository):
    def __init__(self) -> None:
        self.rules: Dict[Tuple[str, str], ContentEntitlementRule] = {}
        self.base_plans: Dict[str, str] = {}
        self.content_grants: Dict[str, ContentGrant] = {}
        self.plan_grants: Dict[Tuple[str, str], PlanGrant] = {}
        self.snapshot_available = True
        self.snapshot_calls = 0
        self._ids = count(1)

    def add_rule(
        self,
        content_type: str,
        content_id: str,
        *,
        required_plan: Optional[str] = None,
        individual_price: Optional[int] = None,
        active: bool = True,
    ) -> ContentEntitlementRule:
        rule = ContentEntitlementRule(
            content_type=content_type,
            content_id=content_id,
            required_plan=required_plan,
            individual_price=individual_price,
            active=active,
        )
        self.rules[(content_type, content_id)] = rule
        return rule

    def set_plan(self, user_id: str, tier: str) -> None:
        self.base_plans[user_id] = tier

    def get_rule(self, content_type: str, content_id: str) -> Optional[ContentEntitlementRule]:
        return self.rules.get((content_type, content_id))

    def get_plan_tiers(self, user_id: str, *, now: datetime) -> Sequence[str]:
        tiers: List[str] = []
        if user_id in self.base_plans:
            tiers.append(self.base_plans[user_id])
        tiers.extend(
            grant.tier
            for grant in self.plan_grants.values()
            if grant.user_id == user_id and grant.is_active(now)
        )
        return tiers

    def has_active_grant(self, user_id: str, content_type: str, content_id: str) -> bool:
        return any(
            grant.user_id == user_id
            and grant.content_type == content_type
            and grant.content_id == content_id
            and grant.is_active
            for grant in self.content_grants.values()
        )

    def fetch_access_snapshot(
        self,
        user_id: str,
        content_type: str,
        content_id: str,
        *,
        now: datetime,
    ) -> AccessSnapshot:
        self.snapshot_calls += 1
        if not self.snapshot_available:
            raise SnapshotUnavailableError("snapshot query disabled")
        return AccessSnapshot(
            rule=self.get_rule(content_type, content_id),
            plan_tiers=tuple(self.get_plan_tiers(user_id, now=now)),
            has_grant=self.has_active_grant(user_id, content_type, content_id),
        )

    def upsert_content_grant(self, grant: ContentGrant) -> ContentGrant:
        existing = self.content_grants.get(grant.origin_purchase_id)
        if existing is not None:
            if existing.payment_ref is None and grant.payment_ref:
                existing = existing.model_copy(update={"payment_ref": grant.payment_ref})
                self.content_grants[grant.origin_purchase_id] = existing
            return existing
        stored = grant.model_copy(update={"id": str(next(self._ids))})
        self.content_grants[grant.origin_purchase_id] = stored
        return stored

    def upsert_plan_grant(self, grant: PlanGrant) -> PlanGrant:
        key = (grant.origin.value, grant.origin_id)
        existing = self.plan_grants.get(key)
        grant_id = existing.id if existing else str(next(self._ids))
        stored = grant.model_copy(update={"id": grant_id, "revoked_at": None})
        self.plan_grants[key] = stored
        return stored

    def revoke_content_grants(self, origin_purchase_id: str, *, revoked_at: datetime) -> List[ContentGrant]:
        grant = self.content_grants.get(origin_purchase_id)
        if grant is None or grant.revoked_at is not None:
            return []
        revoked = grant.model_copy(update={"revoked_at": revoked_at})
        self.content_grants[origin_purchase_id] = revoked
        return [revoked]

    def revoke_plan_grants(
        self,
        origin: GrantOrigin,
        origin_id: str,
        *,
        revoked_at: datetime,
    ) -> List[PlanGrant]:
        key = (origin.value, origin_id)
        grant = self.plan_grants.get(key)
        if grant is None or grant.revoked_at is not None:
            return []
        revoked = grant.model_copy(update={"revoked_at": revoked_at})
        self.plan_grants[key] = revoked
        return [revoked]

    def list_content_grants(self, user_id: str, *, limit: int = 100) -> List[ContentGrant]:
        grants = [g for g in self.content_grants.values() if g.user_id == user_id and g.is_active]
        return grants[:limit]

    def list_plan_grants(self, user_id: str, *, now: datetime) -> List[PlanGrant]:
        return [g for g in self.plan_grants.values() if g.user_id == user_id and g.is_active(now)]


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.purchases: Dict[str, Purchase] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.events: Dict[Tuple[str, str], ProviderEvent] = {}
        self.paid_transitions = 0
        self.provider_plans: Dict[Tuple[str, str, str, int, str], str] = {}
        self.vouchers: Dict[str, Voucher] = {}

    def create_purchase(self, purchase: Purchase) -> Purchase:
        existing = self.get_purchase_by_order(purchase.provider, purchase.provider_order_id)
        if existing is not None:
            return existing
        self.purchases[purchase.id] = purchase
        return purchase

    def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        return self.purchases.get(purchase_id)

    def get_purchase_by_order(self, provider: str, provider_order_id: str) -> Optional[Purchase]:
        for purchase in self.purchases.values():
            if purchase.provider == provider and purchase.provider_order_id == provider_order_id:
                return purchase
        return None

    def get_purchase_by_payment(self, provider: str, provider_payment_id: str) -> Optional[Purchase]:
        for purchase in self.purchases.values():
            if purchase.provider == provider and purchase.provider_payment_id == provider_payment_id:
                return purchase
        return None

    def mark_purchase_paid(
        self,
        purchase_id: str,
        *,
        provider_payment_id: Optional[str],
        price_paid: int,
        paid_at: datetime,
    ) -> Optional[Purchase]:
        purchase = self.purchases.get(purchase_id)
        if purchase is None or purchase.status != PurchaseStatus.CREATED:
            return None
        updated = purchase.model_copy(
            update={
                "status": PurchaseStatus.PAID,
                "provider_payment_id": provider_payment_id or purchase.provider_payment_id,
                "price_paid": price_paid,
                "paid_at": paid_at,
                "updated_at": paid_at,
            }
        )
        self.purchases[purchase_id] = updated
        self.paid_transitions += 1
        return updated

    def mark_purchase_refunded(self, purchase_id: str, *, refunded_at: datetime) -> Optional[Purchase]:
        purchase = self.purchases.get(purchase_id)
        if purchase is None or purchase.status != PurchaseStatus.PAID:
            return None
        updated = purchase.model_copy(
            update={"status": PurchaseStatus.REFUNDED, "refunded_at": refunded_at, "updated_at": refunded_at}
        )
        self.purchases[purchase_id] = updated
        return updated

    def list_purchases(self, user_id: str, *, limit: int = 20) -> Sequence[Purchase]:
        matching = sorted(
            (p for p in self.purchases.values() if p.user_id == user_id),
            key=lambda p: p.created_at,
            reverse=True,
        )
        return matching[:limit]

    def create_subscription(self, subscription: Subscription) -> Subscription:
        existing = self.get_subscription_by_provider_id(
            subscription.provider, subscription.provider_subscription_id
        )
        if existing is not None:
            return existing
        self.subscriptions[subscription.id] = subscription
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def get_subscription_by_provider_id(
        self, provider: str, provider_subscription_id: str
    ) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if (
                subscription.provider == provider
                and subscription.provider_subscription_id == provider_subscription_id
            ):
                return subscription
        return None

    def update_subscription(
        self,
        subscription_id: str,
        *,
        status: Optional[SubscriptionStatus],
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
        cancel_at_period_end: Optional[bool] = None,
    ) -> Optional[Subscription]:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        update: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
        if status is not None:
            update["status"] = status
        if current_period_start is not None:
            update["current_period_start"] = current_period_start
        if current_period_end is not None:
            update["current_period_end"] = current_period_end
        if cancel_at_period_end is not None:
            update["cancel_at_period_end"] = cancel_at_period_end
        updated = subscription.model_copy(update=update)
        self.subscriptions[subscription_id] = updated
        return updated

    def list_subscriptions(self, user_id: str, *, limit: int = 20) -> Sequence[Subscription]:
        return [s for s in self.subscriptions.values() if s.user_id == user_id][:limit]

    def get_provider_plan_id(
        self,
        provider: str,
        tier: str,
        *,
        period: str,
        amount: int,
        currency: str,
    ) -> Optional[str]:
        return self.provider_plans.get((provider, tier, period, amount, currency))

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
        return self.provider_plans.setdefault((provider, tier, period, amount, currency), provider_plan_id)

    def add_voucher(
        self,
        code: str,
        product_id: str,
        *,
        duration_days: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Voucher:
        voucher = Voucher(
            id=f"voucher-{len(self.vouchers) + 1}",
            code=code,
            product_id=product_id,
            duration_days=duration_days,
            expires_at=expires_at,
        )
        self.vouchers[voucher.id] = voucher
        return voucher

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        for voucher in self.vouchers.values():
            if voucher.code == code:
                return voucher
        return None

    def redeem_voucher(self, voucher_id: str, *, user_id: str, redeemed_at: datetime) -> Optional[Voucher]:
        voucher = self.vouchers.get(voucher_id)
        if voucher is None or voucher.status != VoucherStatus.AVAILABLE or voucher.is_expired(redeemed_at):
            return None
        updated = voucher.model_copy(
            update={"status": VoucherStatus.REDEEMED, "redeemed_by": user_id, "redeemed_at": redeemed_at}
        )
        self.vouchers[voucher_id] = updated
        return updated

    def record_provider_event(self, event: ProviderEvent) -> Tuple[ProviderEvent, bool]:
        key = (event.provider, event.external_event_id)
        existing = self.events.get(key)
        if existing is not None:
            return existing, False
        self.events[key] = event
        return event, True

    def _find_event(self, event_id: str) -> Optional[Tuple[Tuple[str, str], ProviderEvent]]:
        for key, event in self.events.items():
            if event.id == event_id:
                return key, event
        return None

    def refresh_provider_event(
        self,
        event_id: str,
        *,
        payload: Dict[str, Any],
        signature_valid: bool,
    ) -> Optional[ProviderEvent]:
        found = self._find_event(event_id)
        if found is None or found[1].result == ProviderEventResult.SUCCESS:
            return None
        key, event = found
        updated = event.model_copy(update={"payload": payload, "signature_valid": signature_valid})
        self.events[key] = updated
        return updated

    def mark_provider_event(
        self,
        event_id: str,
        *,
        result: ProviderEventResult,
        error_message: Optional[str],
        processed_at: datetime,
    ) -> Optional[ProviderEvent]:
        found = self._find_event(event_id)
        if found is None or found[1].result == ProviderEventResult.SUCCESS:
            return None
        key, event = found
        updated = event.model_copy(
            update={"result": result, "error_message": error_message, "processed_at": processed_at}
        )
        self.events[key] = updated
        return updated

    def list_pending_provider_events(self, *, limit: int = 25) -> Sequence[ProviderEvent]:
        pending = [
            event
            for event in self.events.values()
            if event.signature_valid and event.result != ProviderEventResult.SUCCESS
        ]
        return sorted(pending, key=lambda e: e.received_at)[:limit]

    def event_for(self, external_event_id: str) -> Optional[ProviderEvent]:
        return self.events.get(("razorpay", external_event_id))


class StubRazorpayProvider(PaymentProvider):
    """Provider double that signs like Razorpay but never leaves the process."""

    def __init__(self, key_secret: str = KEY_SECRET, key_id: str = "rzp_test_key") -> None:
        self._key_secret = key_secret
        self._key_id = key_id
        self.orders: Dict[str, ProviderOrder] = {}
        self.created: List[Dict[str, Any]] = []
        self.fetch_error: Optional[Exception] = None
        self.plans_created: List[Dict[str, Any]] = []
        self.subscriptions_created: List[Dict[str, Any]] = []
        self.cancelled: List[Tuple[str, bool]] = []
        self.cancel_status = "active"
        self._ids = count(1)

    @property
    def key_id(self) -> Optional[str]:
        return self._key_id

    @property
    def mock(self) -> bool:
        return False

    def create_order(self, *, amount: int, currency: str, notes: Mapping[str, str]) -> ProviderOrder:
        order = ProviderOrder(
            id=f"order_test_{next(self._ids)}",
            amount=amount,
            currency=currency,
            notes=dict(notes),
            status="created",
        )
        self.orders[order.id] = order
        self.created.append({"amount": amount, "currency": currency, "notes": dict(notes)})
        return order

    def fetch_order(self, order_id: str) -> ProviderOrder:
        if self.fetch_error is not None:
            raise self.fetch_error
        try:
            return self.orders[order_id]
        except KeyError as exc:
            raise ProviderUnavailableError("FETCH_ORDER_FAILED", "not found", retryable=False) from exc

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        return verify_payment_signature(self._key_secret, order_id, payment_id, signature)

    def create_plan(
        self,
        *,
        period: str,
        amount: int,
        currency: str,
        name: str,
        notes: Mapping[str, str],
    ) -> str:
        self.plans_created.append(
            {"period": period, "amount": amount, "currency": currency, "name": name, "notes": dict(notes)}
        )
        return f"plan_test_{next(self._ids)}"

    def create_subscription(
        self,
        *,
        plan_id: str,
        total_count: int,
        notes: Mapping[str, str],
    ) -> ProviderSubscription:
        subscription_id = f"sub_test_{next(self._ids)}"
        self.subscriptions_created.append(
            {"plan_id": plan_id, "total_count": total_count, "notes": dict(notes)}
        )
        return ProviderSubscription(
            id=subscription_id,
            status="created",
            short_url=f"https://rzp.io/i/{subscription_id}",
        )

    def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = True) -> ProviderSubscription:
        self.cancelled.append((subscription_id, at_cycle_end))
        return ProviderSubscription(id=subscription_id, status=self.cancel_status)

    def add_order(self, order_id: str, *, amount: int, notes: Mapping[str, str], currency: str = "INR") -> ProviderOrder:
        order = ProviderOrder(id=order_id, amount=amount, currency=currency, notes=dict(notes))
        self.orders[order_id] = order
        return order


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


@pytest.fixture
def billing_config():
    return load_billing_config(
        env={
            "RAZORPAY_KEY_ID": "rzp_test_key",
            "RAZORPAY_KEY_SECRET": KEY_SECRET,
            "RAZORPAY_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "PLAN_PRICES": "hifi=499,sify=999",
        }
    )


@pytest.fixture
def store() -> InMemoryEntitlementStore:
    return InMemoryEntitlementStore()


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> StubRazorpayProvider:
    return StubRazorpayProvider()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def access_cache() -> InMemoryAccessDecisionCache:
    return InMemoryAccessDecisionCache(ttl_seconds=30, max_entries=100)


@pytest.fixture
def billing_service(billing_config, store, billing_repo, provider, event_logger, access_cache):
    return build_billing_service(
        billing_config,
        billing_repository=billing_repo,
        entitlement_repository=store,
        provider=provider,
        event_logger=event_logger,
        cache=access_cache,
    )


@pytest.fixture
def checkout_signature() -> Callable[[str, str], str]:
    def _sign(order_id: str, payment_id: str) -> str:
        return compute_payment_signature(KEY_SECRET, order_id, payment_id)

    return _sign


@pytest.fixture
def signed_webhook() -> Callable[[Dict[str, Any]], Tuple[bytes, str]]:
    def _sign(body: Dict[str, Any]) -> Tuple[bytes, str]:
        raw = json.dumps(body).encode("utf-8")
        return raw, compute_webhook_signature(WEBHOOK_SECRET, raw)

    return _sign
