"""Billing domain package."""

from .errors import (
    AmountMismatchError,
    BillingError,
    InvalidRequestError,
    MissingAmountError,
    NoPriceError,
    ProviderConfigurationError,
    ProviderUnavailableError,
    PurchaseStateError,
    SignatureMismatchError,
    SubscriptionNotFoundError,
    UserMismatchError,
    VoucherError,
)
from .grants import EntitlementGrantService
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CancellationResult,
    CatalogListing,
    CatalogPlan,
    ContentTarget,
    OrderResult,
    OrderTarget,
    PlanTarget,
    ProviderEvent,
    ProviderEventResult,
    ProviderOrder,
    ProviderSubscription,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionResult,
    SubscriptionStatus,
    VerificationResult,
    Voucher,
    VoucherRedemption,
    VoucherStatus,
    WebhookReceipt,
)
from .orders import OrderService
from .protocols import BillingEventLogger, BillingRepository, EntitlementInvalidator, GrantRepository
from .provider import MockPaymentProvider, PaymentProvider, RazorpayPaymentProvider, build_payment_provider
from .service import BillingService
from .subscriptions import SubscriptionService
from .verification import PaymentVerifier
from .vouchers import VoucherService
from .webhooks import WebhookIngestor

__all__ = [
    "AmountMismatchError",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "CancellationResult",
    "CatalogListing",
    "CatalogPlan",
    "ContentTarget",
    "EntitlementGrantService",
    "EntitlementInvalidator",
    "GrantRepository",
    "InvalidRequestError",
    "MissingAmountError",
    "MockPaymentProvider",
    "NoPriceError",
    "OrderResult",
    "OrderService",
    "OrderTarget",
    "PaymentProvider",
    "PaymentVerifier",
    "PlanTarget",
    "ProviderConfigurationError",
    "ProviderEvent",
    "ProviderEventResult",
    "ProviderOrder",
    "ProviderSubscription",
    "ProviderUnavailableError",
    "Purchase",
    "PurchaseStateError",
    "PurchaseStatus",
    "RazorpayPaymentProvider",
    "SignatureMismatchError",
    "Subscription",
    "SubscriptionNotFoundError",
    "SubscriptionResult",
    "SubscriptionService",
    "SubscriptionStatus",
    "UserMismatchError",
    "VerificationResult",
    "Voucher",
    "VoucherError",
    "VoucherRedemption",
    "VoucherService",
    "VoucherStatus",
    "WebhookIngestor",
    "WebhookReceipt",
    "build_payment_provider",
]
