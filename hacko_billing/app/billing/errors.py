"""Typed errors raised by the billing flows."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base error carrying a stable code the caller can branch on."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class InvalidRequestError(BillingError):
    def __init__(self, code: str = "MISSING_FIELDS", message: str = "Missing required fields.", **kwargs: Any) -> None:
        super().__init__(code=code, message=message, status_code=status.HTTP_400_BAD_REQUEST, **kwargs)


class NoPriceError(BillingError):
    def __init__(self, message: str = "Content has no purchasable price.", **kwargs: Any) -> None:
        super().__init__(code="NO_PRICE", message=message, status_code=status.HTTP_400_BAD_REQUEST, **kwargs)


class SignatureMismatchError(BillingError):
    def __init__(self, message: str = "Payment signature mismatch.", **kwargs: Any) -> None:
        super().__init__(code="SIG_MISMATCH", message=message, status_code=status.HTTP_400_BAD_REQUEST, **kwargs)


class UserMismatchError(BillingError):
    def __init__(self, message: str = "Order belongs to a different user.", **kwargs: Any) -> None:
        super().__init__(code="USER_MISMATCH", message=message, status_code=status.HTTP_403_FORBIDDEN, **kwargs)


class MissingAmountError(BillingError):
    def __init__(self, message: str = "Order carries no valid pinned amount.", **kwargs: Any) -> None:
        super().__init__(code="MISSING_AMOUNT", message=message, status_code=status.HTTP_400_BAD_REQUEST, **kwargs)


class AmountMismatchError(BillingError):
    def __init__(self, message: str = "Reported amount differs from the pinned amount.", **kwargs: Any) -> None:
        super().__init__(code="AMOUNT_MISMATCH", message=message, status_code=status.HTTP_409_CONFLICT, **kwargs)


class PurchaseStateError(BillingError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(code="PURCHASE_STATE", message=message, status_code=status.HTTP_409_CONFLICT, **kwargs)


class SubscriptionNotFoundError(BillingError):
    def __init__(self, message: str = "Subscription not found.", **kwargs: Any) -> None:
        super().__init__(
            code="SUBSCRIPTION_NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            **kwargs,
        )


class VoucherError(BillingError):
    """A voucher code that cannot be redeemed by this user."""

    STATUS_CODES = {
        "INVALID_CODE": status.HTTP_404_NOT_FOUND,
        "ALREADY_REDEEMED": status.HTTP_409_CONFLICT,
        "EXPIRED": status.HTTP_410_GONE,
    }

    def __init__(self, code: str, message: str, **kwargs: Any) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=self.STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST),
            **kwargs,
        )


class ProviderConfigurationError(BillingError):
    def __init__(self, message: str = "Payment provider credentials are not configured.", **kwargs: Any) -> None:
        super().__init__(
            code="PROVIDER_NOT_CONFIGURED",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            **kwargs,
        )


class ProviderUnavailableError(BillingError):
    """The provider answered or failed to answer an outbound call."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: bool,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        if status_code is None:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE if retryable else status.HTTP_502_BAD_GATEWAY
        super().__init__(code=code, message=message, status_code=status_code, retryable=retryable, **kwargs)


__all__ = [
    "AmountMismatchError",
    "BillingError",
    "InvalidRequestError",
    "MissingAmountError",
    "NoPriceError",
    "ProviderConfigurationError",
    "ProviderUnavailableError",
    "PurchaseStateError",
    "SignatureMismatchError",
    "SubscriptionNotFoundError",
    "UserMismatchError",
    "VoucherError",
]
