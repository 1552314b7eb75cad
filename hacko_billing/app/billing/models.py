"""Domain models for purchases, subscriptions and provider events."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PurchaseStatus(str, Enum):
    """Lifecycle of a one-off purchase."""

    CREATED = "created"
    PAID = "paid"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    """Canonical subscription states."""

    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class VoucherStatus(str, Enum):
    """Redemption state of a voucher code."""

    AVAILABLE = "available"
    REDEEMED = "redeemed"


class ProviderEventResult(str, Enum):
    """Processing outcome recorded in the idempotency ledger."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class Purchase(BaseModel):
    """A checkout for one content item or one plan upgrade."""

    id: str
    user_id: str
    provider: str = "razorpay"
    provider_order_id: str
    status: PurchaseStatus = PurchaseStatus.CREATED
    content_type: Optional[str] = None
    content_id: Optional[str] = None
    product_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    amount_total: int = Field(ge=0, description="Pinned amount in minor currency units")
    currency: str = Field(min_length=3, max_length=3)
    price_paid: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_content_purchase(self) -> bool:
        return bool(self.content_type and self.content_id)


class Subscription(BaseModel):
    """Subscription state synchronized from provider webhooks."""

    id: str
    user_id: str
    product_id: str
    provider: str = "razorpay"
    provider_subscription_id: str
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Voucher(BaseModel):
    """A prepaid code that unlocks a plan tier once."""

    id: str
    code: str
    product_id: str
    duration_days: Optional[int] = Field(default=None, ge=1)
    status: VoucherStatus = VoucherStatus.AVAILABLE
    expires_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class ProviderEvent(BaseModel):
    """A row in the webhook idempotency ledger."""

    id: str
    provider: str
    event_type: str
    external_event_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    signature_valid: bool = False
    result: ProviderEventResult = ProviderEventResult.PENDING
    error_message: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ContentTarget(BaseModel):
    """Checkout target for an individually priced content item."""

    content_type: str = Field(min_length=1)
    content_id: str = Field(min_length=1)
    price_override: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class PlanTarget(BaseModel):
    """Checkout target for a plan upgrade."""

    plan: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)


OrderTarget = Union[ContentTarget, PlanTarget]


class ProviderOrder(BaseModel):
    """Order as created or fetched from the payment provider."""

    id: str
    amount: int
    currency: str
    notes: Dict[str, str] = Field(default_factory=dict)
    status: Optional[str] = None
    mock: bool = False

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    """Subscription as created or cancelled at the payment provider."""

    id: str
    status: Optional[str] = None
    short_url: Optional[str] = None
    mock: bool = False

    model_config = ConfigDict(frozen=True)


class OrderResult(BaseModel):
    """Outcome of an order creation request."""

    already: bool = False
    reason: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    amount_units: Optional[int] = None
    key: Optional[str] = None
    mock: bool = False
    purchase_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class VerificationResult(BaseModel):
    """Outcome of a successful client-side payment confirmation."""

    success: bool
    price_paid: int
    purchase_id: str
    mock: bool = False

    model_config = ConfigDict(frozen=True)


class SubscriptionResult(BaseModel):
    """Outcome of starting a recurring subscription."""

    already: bool = False
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    short_url: Optional[str] = None
    status: Optional[str] = None
    key: Optional[str] = None
    mock: bool = False

    model_config = ConfigDict(frozen=True)


class CancellationResult(BaseModel):
    """Outcome of a subscription cancellation request."""

    success: bool = True
    status: SubscriptionStatus
    cancel_at_period_end: bool = False

    model_config = ConfigDict(frozen=True)


class VoucherRedemption(BaseModel):
    """Outcome of redeeming a voucher code."""

    success: bool = True
    already: bool = False
    tier: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class CatalogPlan(BaseModel):
    """A purchasable plan tier with its one-off and recurring price."""

    tier: str
    price_units: int
    amount: int
    currency: str
    period: str

    model_config = ConfigDict(frozen=True)


class CatalogListing(BaseModel):
    """Plan tiers in rank order, each with its configured price when sold."""

    tiers: List[str] = Field(default_factory=list)
    plans: List[CatalogPlan] = Field(default_factory=list)
    currency: str
    mock: bool = False

    model_config = ConfigDict(frozen=True)


class WebhookReceipt(BaseModel):
    """Acknowledgement returned for every webhook delivery."""

    received: bool = True
    event: str
    stored_id: Optional[str] = None
    signature_valid: bool = False
    duplicate: bool = False
    already_processed: bool = False
    processed: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    ORDER_CREATED = "order_created"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_REFUNDED = "payment_refunded"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCEL_REQUESTED = "subscription_cancel_requested"
    VOUCHER_REDEEMED = "voucher_redeemed"
    ENTITLEMENT_GRANTED = "entitlement_granted"
    ENTITLEMENT_REVOKED = "entitlement_revoked"
    INTEGRITY_REJECTED = "integrity_rejected"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and support follow-up."""

    event_type: BillingAuditEventType
    actor_id: Optional[str] = None
    purchase_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
