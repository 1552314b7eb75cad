"""Payment provider adapters and signature helpers."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error, request as urllib_request
from uuid import uuid4

from ..config import BillingConfig
from .errors import ProviderConfigurationError, ProviderUnavailableError
from .models import ProviderOrder, ProviderSubscription

logger = logging.getLogger("billing")


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: Optional[str], order_id: str, payment_id: str, signature: Optional[str]) -> bool:
    """Check a checkout confirmation signature in constant time."""

    if not secret or not signature:
        return False
    expected = compute_payment_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected, signature.strip())


def compute_webhook_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: Optional[str], raw_body: bytes, signature: Optional[str]) -> bool:
    """Webhooks are never trusted without a configured secret."""

    if not secret or not signature:
        return False
    expected = compute_webhook_signature(secret, raw_body)
    return hmac.compare_digest(expected, signature.strip())


def _normalize_notes(raw: Any) -> Dict[str, str]:
    # Razorpay serializes empty notes as a JSON array.
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def _subscription_from_payload(payload: Mapping[str, Any], *, mock: bool = False) -> ProviderSubscription:
    return ProviderSubscription(
        id=str(payload["id"]),
        status=payload.get("status"),
        short_url=payload.get("short_url"),
        mock=mock,
    )


def _order_from_payload(payload: Mapping[str, Any], *, mock: bool = False) -> ProviderOrder:
    return ProviderOrder(
        id=str(payload["id"]),
        amount=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or "").upper(),
        notes=_normalize_notes(payload.get("notes")),
        status=payload.get("status"),
        mock=mock,
    )


class PaymentProvider(Protocol):
    """External payment processor integration."""

    @property
    def key_id(self) -> Optional[str]:
        ...

    @property
    def mock(self) -> bool:
        ...

    def create_order(self, *, amount: int, currency: str, notes: Mapping[str, str]) -> ProviderOrder:
        """Create an order charging ``amount`` minor units."""

    def fetch_order(self, order_id: str) -> ProviderOrder:
        """Fetch an order with its pinned notes."""

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Check the signature returned by the checkout widget."""

    def create_plan(
        self,
        *,
        period: str,
        amount: int,
        currency: str,
        name: str,
        notes: Mapping[str, str],
    ) -> str:
        """Register a recurring plan and return its provider id."""

    def create_subscription(
        self,
        *,
        plan_id: str,
        total_count: int,
        notes: Mapping[str, str],
    ) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = True) -> ProviderSubscription:
        ...


class RazorpayPaymentProvider(PaymentProvider):
    """Talks to the Razorpay Orders, Plans and Subscriptions APIs with HTTP basic auth."""

    def __init__(self, config: BillingConfig) -> None:
        self._config = config

    @property
    def key_id(self) -> Optional[str]:
        return self._config.key_id

    @property
    def mock(self) -> bool:
        return False

    def create_order(self, *, amount: int, currency: str, notes: Mapping[str, str]) -> ProviderOrder:
        payload = {
            "amount": amount,
            "currency": currency,
            "payment_capture": 1,
            "notes": dict(notes),
        }
        body = self._request("POST", "/orders", payload, error_code="ORDER_CREATE_FAILED")
        return _order_from_payload(body)

    def fetch_order(self, order_id: str) -> ProviderOrder:
        body = self._request("GET", f"/orders/{order_id}", None, error_code="FETCH_ORDER_FAILED")
        return _order_from_payload(body)

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        return verify_payment_signature(self._config.key_secret, order_id, payment_id, signature)

    def create_plan(
        self,
        *,
        period: str,
        amount: int,
        currency: str,
        name: str,
        notes: Mapping[str, str],
    ) -> str:
        payload = {
            "period": period,
            "interval": 1,
            "item": {"name": name, "amount": amount, "currency": currency},
            "notes": dict(notes),
        }
        body = self._request("POST", "/plans", payload, error_code="PLAN_CREATE_FAILED")
        return str(body["id"])

    def create_subscription(
        self,
        *,
        plan_id: str,
        total_count: int,
        notes: Mapping[str, str],
    ) -> ProviderSubscription:
        payload = {
            "plan_id": plan_id,
            "total_count": total_count,
            "customer_notify": 1,
            "notes": dict(notes),
        }
        body = self._request("POST", "/subscriptions", payload, error_code="SUBSCRIPTION_CREATE_FAILED")
        return _subscription_from_payload(body)

    def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = True) -> ProviderSubscription:
        body = self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if at_cycle_end else 0},
            error_code="CANCEL_FAILED",
        )
        return _subscription_from_payload(body)

    def _authorization_header(self) -> str:
        if not self._config.has_credentials:
            raise ProviderConfigurationError()
        token = f"{self._config.key_id}:{self._config.key_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]],
        *,
        error_code: str,
    ) -> Dict[str, Any]:
        headers = {"Authorization": self._authorization_header(), "Accept": "application/json"}
        data: Optional[bytes] = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"

        url = f"{self._config.api_base_url}{path}"
        request = urllib_request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib_request.urlopen(request, timeout=self._config.provider_timeout_seconds) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            text = exc.read().decode("utf-8", errors="replace")
            logger.warning(
                "Razorpay %s %s failed with status %s",
                method,
                path,
                exc.code,
                extra={"provider_status": exc.code, "error": text[:500]},
            )
            if exc.code >= 500:
                raise ProviderUnavailableError(
                    error_code,
                    f"Payment provider returned status {exc.code}",
                    retryable=True,
                ) from exc
            code = "LOW_AMOUNT" if exc.code == 400 and "minimum" in text.lower() else error_code
            raise ProviderUnavailableError(
                code,
                f"Payment provider rejected the request (status {exc.code})",
                retryable=False,
                detail={"provider_status": exc.code},
            ) from exc
        except (urllib_error.URLError, TimeoutError) as exc:
            logger.warning(
                "Razorpay %s %s unreachable",
                method,
                path,
                extra={"error": str(exc)},
            )
            raise ProviderUnavailableError(
                error_code,
                "Payment provider is unreachable",
                retryable=True,
            ) from exc

        try:
            return json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProviderUnavailableError(
                error_code,
                "Payment provider returned an unreadable response",
                retryable=True,
            ) from exc


class MockPaymentProvider(PaymentProvider):
    """Offline provider for local development; every signature is accepted."""

    def __init__(self, key_id: Optional[str] = None) -> None:
        self._key_id = key_id
        self._orders: Dict[str, ProviderOrder] = {}
        self._subscriptions: Dict[str, ProviderSubscription] = {}
        self._lock = threading.Lock()

    @property
    def key_id(self) -> Optional[str]:
        return self._key_id

    @property
    def mock(self) -> bool:
        return True

    def create_order(self, *, amount: int, currency: str, notes: Mapping[str, str]) -> ProviderOrder:
        order = ProviderOrder(
            id=f"order_mock_{uuid4().hex}",
            amount=amount,
            currency=currency.upper(),
            notes=_normalize_notes(notes),
            status="created",
            mock=True,
        )
        with self._lock:
            self._orders[order.id] = order
        return order

    def fetch_order(self, order_id: str) -> ProviderOrder:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise ProviderUnavailableError(
                "FETCH_ORDER_FAILED",
                f"Unknown mock order {order_id}",
                retryable=False,
            )
        return order

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        return True

    def create_plan(
        self,
        *,
        period: str,
        amount: int,
        currency: str,
        name: str,
        notes: Mapping[str, str],
    ) -> str:
        return f"plan_mock_{uuid4().hex}"

    def create_subscription(
        self,
        *,
        plan_id: str,
        total_count: int,
        notes: Mapping[str, str],
    ) -> ProviderSubscription:
        subscription = ProviderSubscription(id=f"sub_mock_{uuid4().hex}", status="created", mock=True)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def cancel_subscription(self, subscription_id: str, *, at_cycle_end: bool = True) -> ProviderSubscription:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise ProviderUnavailableError(
                    "CANCEL_FAILED",
                    f"Unknown mock subscription {subscription_id}",
                    retryable=False,
                )
            # Mock subscriptions never activate, so cancellation is immediate.
            cancelled = subscription.model_copy(update={"status": "cancelled"})
            self._subscriptions[subscription_id] = cancelled
        return cancelled


def build_payment_provider(config: BillingConfig) -> PaymentProvider:
    if config.mock_mode:
        return MockPaymentProvider(key_id=config.key_id)
    return RazorpayPaymentProvider(config)


__all__ = [
    "MockPaymentProvider",
    "PaymentProvider",
    "RazorpayPaymentProvider",
    "build_payment_provider",
    "compute_payment_signature",
    "compute_webhook_signature",
    "verify_payment_signature",
    "verify_webhook_signature",
]
