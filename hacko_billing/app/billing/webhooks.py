"""Webhook ingestion backed by the provider event ledger."""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .errors import AmountMismatchError, BillingError, PurchaseStateError
from .events import (
    MalformedEventError,
    PaymentCaptured,
    PaymentRefunded,
    ProviderEventVariant,
    SubscriptionLifecycle,
    UnknownEvent,
    entity_id,
    parse_provider_event,
)
from .grants import EntitlementGrantService
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    ProviderEvent,
    ProviderEventResult,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    WebhookReceipt,
)
from .notes import purchase_from_notes
from .protocols import BillingEventLogger, BillingRepository
from .provider import verify_webhook_signature

logger = logging.getLogger("billing")

INVALID_SIGNATURE = "invalid signature"
DEFAULT_SUBSCRIPTION_DAYS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        decoded = json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def external_event_id(
    body: Dict[str, Any],
    raw_body: bytes,
    event_type: str,
    header_event_id: Optional[str] = None,
) -> str:
    """Stable identity of a delivery, used as the ledger's dedup key."""

    if body.get("id"):
        return str(body["id"])
    if header_event_id and header_event_id.strip():
        return header_event_id.strip()
    primary_id = entity_id(body)
    if primary_id:
        return f"{event_type}:{primary_id}"
    return hashlib.sha256(raw_body).hexdigest()


def subscription_duration_days(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None or end <= start:
        return DEFAULT_SUBSCRIPTION_DAYS
    return max(1, round((end - start).total_seconds() / 86400))


@dataclass
class WebhookIngestor:
    """Records every delivery, then applies each event at most once."""

    repository: BillingRepository
    grants: EntitlementGrantService
    event_logger: BillingEventLogger
    webhook_secret: Optional[str] = None
    currency: str = "INR"
    provider_name: str = "razorpay"
    clock: Callable[[], datetime] = _utcnow

    def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id_header: Optional[str] = None,
    ) -> WebhookReceipt:
        signature_valid = verify_webhook_signature(self.webhook_secret, raw_body, signature)
        body = _decode_body(raw_body)
        event_type = str(body.get("event") or "unknown")

        event, created = self.repository.record_provider_event(
            ProviderEvent(
                id=str(uuid4()),
                provider=self.provider_name,
                event_type=event_type,
                external_event_id=external_event_id(body, raw_body, event_type, event_id_header),
                payload=body,
                signature_valid=signature_valid,
                received_at=self.clock(),
            )
        )
        duplicate = not created

        if duplicate and event.result == ProviderEventResult.SUCCESS:
            logger.debug("Ignoring redelivered event %s", event.external_event_id)
            return WebhookReceipt(
                event=event_type,
                stored_id=event.id,
                signature_valid=signature_valid,
                duplicate=True,
                already_processed=True,
            )

        if not signature_valid:
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"event_type": event_type, "stored_id": event.id},
            )
            self.repository.mark_provider_event(
                event.id,
                result=ProviderEventResult.ERROR,
                error_message=INVALID_SIGNATURE,
                processed_at=self.clock(),
            )
            return WebhookReceipt(
                event=event_type,
                stored_id=event.id,
                signature_valid=False,
                duplicate=duplicate,
                error=INVALID_SIGNATURE,
            )

        if duplicate and not event.signature_valid:
            event = self.repository.refresh_provider_event(
                event.id, payload=body, signature_valid=True
            ) or event

        error = self._process(event.id, event_type, body)
        return WebhookReceipt(
            event=event_type,
            stored_id=event.id,
            signature_valid=True,
            duplicate=duplicate,
            processed=error is None,
            error=error,
        )

    def reprocess_pending(self, *, limit: int = 25) -> List[WebhookReceipt]:
        """Replay signature-valid ledger rows that never reached ``success``."""

        receipts: List[WebhookReceipt] = []
        for event in self.repository.list_pending_provider_events(limit=limit):
            error = self._process(event.id, event.event_type, event.payload)
            receipts.append(
                WebhookReceipt(
                    event=event.event_type,
                    stored_id=event.id,
                    signature_valid=event.signature_valid,
                    duplicate=True,
                    processed=error is None,
                    error=error,
                )
            )
        logger.info("Reprocessed %s pending provider events", len(receipts))
        return receipts

    def _process(self, stored_id: str, event_type: str, body: Dict[str, Any]) -> Optional[str]:
        error: Optional[str] = None
        try:
            self._dispatch(parse_provider_event(event_type, body))
        except (BillingError, MalformedEventError) as exc:
            error = str(exc)
            logger.warning(
                "Provider event %s failed: %s",
                stored_id,
                error,
                extra={"event_type": event_type, "stored_id": stored_id},
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Unexpected failure processing provider event %s", stored_id)

        self.repository.mark_provider_event(
            stored_id,
            result=ProviderEventResult.ERROR if error else ProviderEventResult.SUCCESS,
            error_message=error,
            processed_at=self.clock(),
        )
        return error

    def _dispatch(self, variant: ProviderEventVariant) -> None:
        if isinstance(variant, PaymentCaptured):
            self._on_payment_captured(variant)
        elif isinstance(variant, PaymentRefunded):
            self._on_payment_refunded(variant)
        elif isinstance(variant, SubscriptionLifecycle):
            self._on_subscription(variant)
        elif isinstance(variant, UnknownEvent):
            logger.debug("No handler for provider event %s", variant.event_type)

    def _on_payment_captured(self, event: PaymentCaptured) -> None:
        purchase = self.repository.get_purchase_by_order(self.provider_name, event.order_id)
        if purchase is None:
            synthesized = purchase_from_notes(
                provider=self.provider_name,
                order_id=event.order_id,
                notes=event.notes,
                currency=self.currency,
            )
            if synthesized is None:
                raise PurchaseStateError(f"No purchase for order {event.order_id} and notes are incomplete")
            purchase = self.repository.create_purchase(synthesized)

        captured_now = False
        if purchase.status == PurchaseStatus.CREATED:
            if event.amount != purchase.amount_total or event.currency != purchase.currency:
                self.event_logger.log(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.INTEGRITY_REJECTED,
                        actor_id=purchase.user_id,
                        purchase_id=purchase.id,
                        metadata={"order_id": event.order_id, "code": "AMOUNT_MISMATCH"},
                    )
                )
                raise AmountMismatchError(
                    f"Captured {event.amount} {event.currency}, expected "
                    f"{purchase.amount_total} {purchase.currency}"
                )
            updated = self.repository.mark_purchase_paid(
                purchase.id,
                provider_payment_id=event.payment_id,
                price_paid=purchase.amount_total // 100,
                paid_at=self.clock(),
            )
            captured_now = updated is not None
            purchase = updated or self.repository.get_purchase(purchase.id) or purchase

        if purchase.status != PurchaseStatus.PAID:
            logger.debug("Purchase %s already %s", purchase.id, purchase.status.value)
            return

        # A paid purchase may still lack its grant if an earlier attempt failed midway.
        self.grants.grant_purchase(purchase.id)
        if captured_now:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PAYMENT_CAPTURED,
                    actor_id=purchase.user_id,
                    purchase_id=purchase.id,
                    metadata={"order_id": event.order_id, "payment_id": event.payment_id},
                )
            )

    def _on_payment_refunded(self, event: PaymentRefunded) -> None:
        purchase = self.repository.get_purchase_by_payment(self.provider_name, event.payment_id)
        if purchase is None and event.order_id:
            purchase = self.repository.get_purchase_by_order(self.provider_name, event.order_id)
        if purchase is None:
            raise PurchaseStateError(f"No purchase for payment {event.payment_id}")

        refunded_now = False
        if purchase.status == PurchaseStatus.PAID:
            updated = self.repository.mark_purchase_refunded(purchase.id, refunded_at=self.clock())
            refunded_now = updated is not None
            purchase = updated or self.repository.get_purchase(purchase.id) or purchase

        if purchase.status != PurchaseStatus.REFUNDED:
            logger.debug("Refund for purchase %s in state %s ignored", purchase.id, purchase.status.value)
            return

        # Revocation only touches grants that are still live.
        self.grants.revoke_purchase(purchase.id)
        if refunded_now:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PAYMENT_REFUNDED,
                    actor_id=purchase.user_id,
                    purchase_id=purchase.id,
                    metadata={"payment_id": event.payment_id},
                )
            )

    def _on_subscription(self, event: SubscriptionLifecycle) -> None:
        subscription = self.repository.get_subscription_by_provider_id(
            self.provider_name, event.subscription_id
        )
        if subscription is None:
            subscription = self._subscription_from_notes(event)

        if event.status is None:
            logger.warning(
                "Unmapped subscription status %r",
                event.provider_status,
                extra={"subscription_id": subscription.id, "event_type": event.event_type},
            )

        updated = self.repository.update_subscription(
            subscription.id,
            status=event.status,
            current_period_start=event.current_start,
            current_period_end=event.current_end,
        ) or subscription

        if event.status == SubscriptionStatus.ACTIVE:
            duration = subscription_duration_days(updated.current_period_start, updated.current_period_end)
            self.grants.grant_subscription(updated.id, duration)
        elif event.status == SubscriptionStatus.CANCELED:
            self.grants.revoke_subscription(updated.id)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_UPDATED,
                actor_id=updated.user_id,
                subscription_id=updated.id,
                metadata={"status": updated.status.value, "provider_status": event.provider_status},
            )
        )

    def _subscription_from_notes(self, event: SubscriptionLifecycle) -> Subscription:
        user_id = event.notes.get("user_id")
        product_id = event.notes.get("plan") or event.notes.get("product_id")
        if not user_id or not product_id:
            raise PurchaseStateError(
                f"Unknown subscription {event.subscription_id} and notes do not name a user and plan"
            )
        now = self.clock()
        return self.repository.create_subscription(
            Subscription(
                id=str(uuid4()),
                user_id=user_id,
                product_id=product_id.lower(),
                provider=self.provider_name,
                provider_subscription_id=event.subscription_id,
                status=event.status or SubscriptionStatus.INCOMPLETE,
                current_period_start=event.current_start,
                current_period_end=event.current_end,
                created_at=now,
                updated_at=now,
            )
        )


__all__ = ["WebhookIngestor", "external_event_id", "subscription_duration_days"]
