"""Client-side payment confirmation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import (
    AmountMismatchError,
    InvalidRequestError,
    MissingAmountError,
    PurchaseStateError,
    SignatureMismatchError,
    UserMismatchError,
)
from .grants import EntitlementGrantService
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Purchase,
    PurchaseStatus,
    VerificationResult,
)
from .notes import parse_amount_units, purchase_from_notes
from .protocols import BillingEventLogger, BillingRepository
from .provider import PaymentProvider

logger = logging.getLogger("billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentVerifier:
    """Confirms a checkout the browser reports as paid.

    Nothing is written until the signature, the order owner and the pinned
    amount have all been checked. Repeating a successful confirmation is
    harmless: the purchase only moves to ``paid`` once and the grant is an
    upsert keyed by the purchase.
    """

    repository: BillingRepository
    provider: PaymentProvider
    grants: EntitlementGrantService
    event_logger: BillingEventLogger
    currency: str = "INR"
    provider_name: str = "razorpay"
    clock: Callable[[], datetime] = _utcnow

    def verify(
        self,
        user_id: str,
        *,
        order_id: Optional[str],
        payment_id: Optional[str],
        signature: Optional[str],
        content_type: Optional[str] = None,
        content_id: Optional[str] = None,
    ) -> VerificationResult:
        if not user_id or not order_id or not payment_id or not signature:
            raise InvalidRequestError("MISSING_FIELDS", "order_id, payment id and signature are required.")

        if not self.provider.verify_payment_signature(order_id, payment_id, signature):
            self._reject(user_id, order_id, "SIG_MISMATCH")
            raise SignatureMismatchError()

        order = self.provider.fetch_order(order_id)
        notes = order.notes
        if notes.get("user_id") != user_id:
            self._reject(user_id, order_id, "USER_MISMATCH")
            raise UserMismatchError()

        if content_type and content_id:
            if (notes.get("content_type"), notes.get("content_id")) != (content_type, content_id):
                raise InvalidRequestError("TARGET_MISMATCH", "Order was created for different content.")

        amount_units = parse_amount_units(notes)
        if amount_units is None:
            self._reject(user_id, order_id, "MISSING_AMOUNT")
            raise MissingAmountError()

        expected_minor = amount_units * 100
        purchase = self.repository.get_purchase_by_order(self.provider_name, order_id)
        pinned_amount = purchase.amount_total if purchase else expected_minor
        pinned_currency = purchase.currency if purchase else self.currency
        if (
            order.amount != expected_minor
            or pinned_amount != expected_minor
            or order.currency.upper() != pinned_currency
        ):
            self._reject(user_id, order_id, "AMOUNT_MISMATCH")
            raise AmountMismatchError(
                detail={
                    "expected_amount": expected_minor,
                    "reported_amount": order.amount,
                    "expected_currency": pinned_currency,
                    "reported_currency": order.currency,
                }
            )

        if purchase is None:
            synthesized = purchase_from_notes(
                provider=self.provider_name,
                order_id=order_id,
                notes=notes,
                currency=pinned_currency,
            )
            if synthesized is None:
                raise MissingAmountError("Order notes do not identify what was bought.")
            purchase = self.repository.create_purchase(synthesized)
            logger.info("Synthesized purchase %s for unknown order %s", purchase.id, order_id)

        if purchase.user_id != user_id:
            self._reject(user_id, order_id, "USER_MISMATCH")
            raise UserMismatchError()

        purchase = self._settle(purchase, payment_id=payment_id, price_paid=amount_units)
        self.grants.grant_purchase(purchase.id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_VERIFIED,
                actor_id=user_id,
                purchase_id=purchase.id,
                metadata={"order_id": order_id, "payment_id": payment_id},
            )
        )
        price_paid = purchase.price_paid if purchase.price_paid is not None else amount_units
        return VerificationResult(
            success=True,
            price_paid=price_paid,
            purchase_id=purchase.id,
            mock=self.provider.mock,
        )

    def _settle(self, purchase: Purchase, *, payment_id: str, price_paid: int) -> Purchase:
        if purchase.status == PurchaseStatus.CREATED:
            updated = self.repository.mark_purchase_paid(
                purchase.id,
                provider_payment_id=payment_id,
                price_paid=price_paid,
                paid_at=self.clock(),
            )
            if updated is None:
                # Lost the race to a concurrent confirmation or webhook.
                updated = self.repository.get_purchase(purchase.id)
            purchase = updated or purchase

        if purchase.status != PurchaseStatus.PAID:
            raise PurchaseStateError(
                f"Purchase {purchase.id} is {purchase.status.value}",
                detail={"purchase_id": purchase.id, "status": purchase.status.value},
            )
        return purchase

    def _reject(self, user_id: str, order_id: str, code: str) -> None:
        logger.warning(
            "Rejected payment confirmation for order %s: %s",
            order_id,
            code,
            extra={"user_id": user_id, "order_id": order_id, "code": code},
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.INTEGRITY_REJECTED,
                actor_id=user_id,
                metadata={"order_id": order_id, "code": code},
            )
        )


__all__ = ["PaymentVerifier"]
