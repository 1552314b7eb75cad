"""API schemas for access and billing endpoints."""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import OrderResult, Purchase, Subscription, SubscriptionResult, WebhookReceipt
from ..entitlements.models import AccessDecision, ContentGrant, PlanGrant, reason_message


class AccessDecisionResponse(BaseModel):
    allow: bool
    reason: str
    message: Optional[str] = None
    required_plan: Optional[str] = None
    individual_price: Optional[int] = None

    @classmethod
    def from_decision(cls, decision: AccessDecision) -> "AccessDecisionResponse":
        return cls(
            allow=decision.allow,
            reason=decision.reason.value,
            message=reason_message(decision.reason.value),
            required_plan=decision.required_plan,
            individual_price=decision.individual_price,
        )


class PurchaseContentRequest(BaseModel):
    action: Literal["create", "verify", "diag"] = "create"
    content_type: Optional[str] = Field(default=None, min_length=1)
    content_id: Optional[str] = Field(default=None, min_length=1)
    price_override: Optional[int] = None
    order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class PayPlanRequest(BaseModel):
    action: Literal["create", "verify"] = "create"
    plan: Optional[str] = None
    order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class OrderResponse(BaseModel):
    already: bool = False
    reason: Optional[str] = None
    message: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    amount_units: Optional[int] = None
    key: Optional[str] = None
    mock: bool = False

    @classmethod
    def from_result(cls, result: OrderResult) -> "OrderResponse":
        return cls(
            already=result.already,
            reason=result.reason,
            message=reason_message(result.reason),
            order_id=result.order_id,
            amount=result.amount,
            currency=result.currency,
            amount_units=result.amount_units,
            key=result.key,
            mock=result.mock,
        )


class VerifyResponse(BaseModel):
    success: bool
    mock: bool = False
    price_paid: int


class DiagResponse(BaseModel):
    mock: bool
    has_key: bool
    access: Optional[AccessDecisionResponse] = None


class CreateSubscriptionRequest(BaseModel):
    plan: str = Field(min_length=1)


class SubscriptionResponse(BaseModel):
    already: bool = False
    reason: Optional[str] = None
    message: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    short_url: Optional[str] = None
    status: Optional[str] = None
    key: Optional[str] = None
    mock: bool = False

    @classmethod
    def from_result(cls, result: SubscriptionResult) -> "SubscriptionResponse":
        return cls(message=reason_message(result.reason), **result.model_dump())


class RedeemVoucherRequest(BaseModel):
    code: str = Field(min_length=1)


class PurchaseListResponse(BaseModel):
    purchases: List[Purchase]


class SubscriptionListResponse(BaseModel):
    subscriptions: List[Subscription]


class EntitlementListResponse(BaseModel):
    effective_plan: str
    content: List[ContentGrant]
    plans: List[PlanGrant]


class ReprocessEventsResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    receipts: List[WebhookReceipt]

    @classmethod
    def from_receipts(cls, receipts: List[WebhookReceipt]) -> "ReprocessEventsResponse":
        succeeded = sum(1 for receipt in receipts if receipt.processed)
        return cls(
            processed=len(receipts),
            succeeded=succeeded,
            failed=len(receipts) - succeeded,
            receipts=receipts,
        )


__all__ = [
    "AccessDecisionResponse",
    "CreateSubscriptionRequest",
    "DiagResponse",
    "EntitlementListResponse",
    "OrderResponse",
    "PayPlanRequest",
    "PurchaseContentRequest",
    "PurchaseListResponse",
    "RedeemVoucherRequest",
    "ReprocessEventsResponse",
    "SubscriptionListResponse",
    "SubscriptionResponse",
    "VerifyResponse",
]
