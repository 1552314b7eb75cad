"""Typed views over provider webhook payloads.

Every delivery is parsed into exactly one variant. Event types this module
does not know about become :class:`UnknownEvent` so they can be recorded in
the ledger without any side effects.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from .models import SubscriptionStatus

SUBSCRIPTION_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "created": SubscriptionStatus.INCOMPLETE,
    "authenticated": SubscriptionStatus.INCOMPLETE,
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "halted": SubscriptionStatus.PAST_DUE,
    "completed": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}


class MalformedEventError(ValueError):
    """A known event type is missing fields required to act on it."""


@dataclass(frozen=True)
class PaymentCaptured:
    order_id: str
    payment_id: str
    amount: int
    currency: str
    notes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentRefunded:
    payment_id: str
    order_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionLifecycle:
    event_type: str
    subscription_id: str
    provider_status: str
    status: Optional[SubscriptionStatus]
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    plan_id: Optional[str] = None
    notes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str


ProviderEventVariant = Union[PaymentCaptured, PaymentRefunded, SubscriptionLifecycle, UnknownEvent]


def map_subscription_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not provider_status:
        return None
    return SUBSCRIPTION_STATUS_MAP.get(provider_status.strip().lower())


def _entity(payload: Mapping[str, Any], name: str) -> Dict[str, Any]:
    section = payload.get(name)
    if not isinstance(section, Mapping):
        return {}
    entity = section.get("entity")
    return dict(entity) if isinstance(entity, Mapping) else {}


def _notes(entity: Mapping[str, Any]) -> Dict[str, str]:
    raw = entity.get("notes")
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def _epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _require(entity: Mapping[str, Any], key: str, event_type: str) -> Any:
    value = entity.get(key)
    if value in (None, ""):
        raise MalformedEventError(f"{event_type} payload is missing {key}")
    return value


def entity_id(body: Mapping[str, Any]) -> Optional[str]:
    """Return the id of the primary entity carried by a webhook body."""

    payload = body.get("payload")
    if not isinstance(payload, Mapping):
        return None
    for name in ("payment", "refund", "subscription", "order"):
        value = _entity(payload, name).get("id")
        if value:
            return str(value)
    return None


def parse_provider_event(event_type: str, body: Mapping[str, Any]) -> ProviderEventVariant:
    """Map a decoded webhook body onto its tagged variant."""

    payload = body.get("payload") if isinstance(body.get("payload"), Mapping) else {}

    if event_type == "payment.captured":
        payment = _entity(payload, "payment")
        raw_amount = _require(payment, "amount", event_type)
        try:
            amount = int(raw_amount)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"{event_type} payload has an invalid amount") from exc
        return PaymentCaptured(
            order_id=str(_require(payment, "order_id", event_type)),
            payment_id=str(_require(payment, "id", event_type)),
            amount=amount,
            currency=str(_require(payment, "currency", event_type)).upper(),
            notes=_notes(payment),
        )

    if event_type == "payment.refunded":
        payment = _entity(payload, "payment")
        payment_id = payment.get("id") or _entity(payload, "refund").get("payment_id")
        if not payment_id:
            raise MalformedEventError(f"{event_type} payload is missing id")
        order_id = payment.get("order_id")
        return PaymentRefunded(payment_id=str(payment_id), order_id=str(order_id) if order_id else None)

    if event_type.startswith("subscription."):
        subscription = _entity(payload, "subscription")
        provider_status = str(subscription.get("status") or "")
        plan_id = subscription.get("plan_id")
        return SubscriptionLifecycle(
            event_type=event_type,
            subscription_id=str(_require(subscription, "id", event_type)),
            provider_status=provider_status,
            status=map_subscription_status(provider_status),
            current_start=_epoch(subscription.get("current_start")),
            current_end=_epoch(subscription.get("current_end")),
            plan_id=str(plan_id) if plan_id else None,
            notes=_notes(subscription),
        )

    return UnknownEvent(event_type=event_type or "unknown")


__all__ = [
    "MalformedEventError",
    "PaymentCaptured",
    "PaymentRefunded",
    "ProviderEventVariant",
    "SUBSCRIPTION_STATUS_MAP",
    "SubscriptionLifecycle",
    "UnknownEvent",
    "entity_id",
    "map_subscription_status",
    "parse_provider_event",
]
