"""Order notes pin who is paying, for what and how much."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from uuid import uuid4

from .models import Purchase, PurchaseStatus


def build_content_notes(user_id: str, content_type: str, content_id: str, amount_units: int) -> Dict[str, str]:
    return {
        "content_type": content_type,
        "content_id": content_id,
        "user_id": user_id,
        "amount_units": str(amount_units),
    }


def build_plan_notes(user_id: str, plan: str, amount_units: int) -> Dict[str, str]:
    return {"plan": plan, "user_id": user_id, "amount_units": str(amount_units)}


def build_subscription_notes(user_id: str, plan: str) -> Dict[str, str]:
    return {"plan": plan, "product_id": plan, "user_id": user_id}


def parse_amount_units(notes: Mapping[str, str]) -> Optional[int]:
    """Return the pinned whole-unit amount, or ``None`` when it is unusable."""

    raw = notes.get("amount_units")
    if raw is None:
        return None
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def purchase_from_notes(
    *,
    provider: str,
    order_id: str,
    notes: Mapping[str, str],
    currency: str,
) -> Optional[Purchase]:
    """Rebuild a ``created`` purchase for an order we have no row for.

    Returns ``None`` when the notes do not identify a user, an amount and
    either a content item or a plan.
    """

    user_id = notes.get("user_id")
    amount_units = parse_amount_units(notes)
    content_type = notes.get("content_type")
    content_id = notes.get("content_id")
    plan = notes.get("plan")
    if not user_id or amount_units is None:
        return None
    if not (content_type and content_id) and not plan:
        return None

    now = datetime.now(timezone.utc)
    return Purchase(
        id=str(uuid4()),
        user_id=user_id,
        provider=provider,
        provider_order_id=order_id,
        status=PurchaseStatus.CREATED,
        content_type=content_type if content_id else None,
        content_id=content_id if content_type else None,
        product_id=None if content_type and content_id else plan.lower(),
        amount_total=amount_units * 100,
        currency=currency,
        created_at=now,
        updated_at=now,
    )


__all__ = [
    "build_content_notes",
    "build_plan_notes",
    "build_subscription_notes",
    "parse_amount_units",
    "purchase_from_notes",
]
