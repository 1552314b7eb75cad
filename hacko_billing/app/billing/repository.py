"""Persistence layer for billing domain objects."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import psycopg2.extras

from ..database import PostgresRepository
from .models import (
    ProviderEvent,
    ProviderEventResult,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    Voucher,
    VoucherStatus,
)


def _row_to_purchase(row: dict) -> Purchase:
    return Purchase(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        provider_order_id=row["provider_order_id"],
        status=PurchaseStatus(row["status"]),
        content_type=row.get("content_type"),
        content_id=row.get("content_id"),
        product_id=row.get("product_id"),
        provider_payment_id=row.get("provider_payment_id"),
        amount_total=int(row["amount_total"]),
        currency=row["currency"],
        price_paid=row.get("price_paid"),
        created_at=row["created_at"],
        paid_at=row.get("paid_at"),
        refunded_at=row.get("refunded_at"),
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        product_id=row["product_id"],
        provider=row["provider"],
        provider_subscription_id=row["provider_subscription_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_voucher(row: dict) -> Voucher:
    return Voucher(
        id=str(row["id"]),
        code=row["code"],
        product_id=row["product_id"],
        duration_days=row.get("duration_days"),
        status=VoucherStatus(row["status"]),
        expires_at=row.get("expires_at"),
        redeemed_by=row.get("redeemed_by"),
        redeemed_at=row.get("redeemed_at"),
        created_at=row["created_at"],
    )


def _row_to_provider_event(row: dict) -> ProviderEvent:
    return ProviderEvent(
        id=str(row["id"]),
        provider=row["provider"],
        event_type=row["event_type"],
        external_event_id=row["external_event_id"],
        payload=row.get("payload") or {},
        signature_valid=bool(row.get("signature_valid")),
        result=ProviderEventResult(row["result"]),
        error_message=row.get("error_message"),
        received_at=row["received_at"],
        processed_at=row.get("processed_at"),
    )


class PostgresBillingRepository(PostgresRepository):
    """Concrete repository persisting billing models in PostgreSQL."""

    def create_purchase(self, purchase: Purchase) -> Purchase:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO purchases (
                    id,
                    user_id,
                    provider,
                    provider_order_id,
                    status,
                    content_type,
                    content_id,
                    product_id,
                    amount_total,
                    currency,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(user_id)s, %(provider)s, %(provider_order_id)s, %(status)s,
                        %(content_type)s, %(content_id)s, %(product_id)s, %(amount_total)s,
                        %(currency)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (provider, provider_order_id) DO NOTHING
                RETURNING *
                """,
                {
                    "id": purchase.id,
                    "user_id": purchase.user_id,
                    "provider": purchase.provider,
                    "provider_order_id": purchase.provider_order_id,
                    "status": purchase.status.value,
                    "content_type": purchase.content_type,
                    "content_id": purchase.content_id,
                    "product_id": purchase.product_id,
                    "amount_total": purchase.amount_total,
                    "currency": purchase.currency,
                    "created_at": purchase.created_at,
                    "updated_at": purchase.updated_at,
                },
            )
            row = cursor.fetchone()
            if row is None:
                cursor.execute(
                    "SELECT * FROM purchases WHERE provider = %s AND provider_order_id = %s",
                    (purchase.provider, purchase.provider_order_id),
                )
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist purchase")
            return _row_to_purchase(row)

    def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM purchases WHERE id = %s", (purchase_id,))
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def get_purchase_by_order(self, provider: str, provider_order_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM purchases WHERE provider = %s AND provider_order_id = %s",
                (provider, provider_order_id),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def get_purchase_by_payment(self, provider: str, provider_payment_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM purchases WHERE provider = %s AND provider_payment_id = %s",
                (provider, provider_payment_id),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def mark_purchase_paid(
        self,
        purchase_id: str,
        *,
        provider_payment_id: Optional[str],
        price_paid: int,
        paid_at: datetime,
    ) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE purchases
                SET status = 'paid',
                    provider_payment_id = COALESCE(%s, provider_payment_id),
                    price_paid = %s,
                    paid_at = %s,
                    updated_at = NOW()
                WHERE id = %s AND status = 'created'
                RETURNING *
                """,
                (provider_payment_id, price_paid, paid_at, purchase_id),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def mark_purchase_refunded(self, purchase_id: str, *, refunded_at: datetime) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE purchases
                SET status = 'refunded', refunded_at = %s, updated_at = NOW()
                WHERE id = %s AND status = 'paid'
                RETURNING *
                """,
                (refunded_at, purchase_id),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def list_purchases(self, user_id: str, *, limit: int = 20) -> List[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM purchases
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_purchase(row) for row in rows]

    def create_subscription(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    id,
                    user_id,
                    product_id,
                    provider,
                    provider_subscription_id,
                    status,
                    current_period_start,
                    current_period_end,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(user_id)s, %(product_id)s, %(provider)s, %(provider_subscription_id)s,
                        %(status)s, %(current_period_start)s, %(current_period_end)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (provider, provider_subscription_id) DO NOTHING
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "user_id": subscription.user_id,
                    "product_id": subscription.product_id,
                    "provider": subscription.provider,
                    "provider_subscription_id": subscription.provider_subscription_id,
                    "status": subscription.status.value,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "created_at": subscription.created_at,
                    "updated_at": subscription.updated_at,
                },
            )
            row = cursor.fetchone()
            if row is None:
                cursor.execute(
                    "SELECT * FROM subscriptions WHERE provider = %s AND provider_subscription_id = %s",
                    (subscription.provider, subscription.provider_subscription_id),
                )
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscriptions WHERE id = %s", (subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_provider_id(
        self, provider: str, provider_subscription_id: str
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscriptions WHERE provider = %s AND provider_subscription_id = %s",
                (provider, provider_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update_subscription(
        self,
        subscription_id: str,
        *,
        status: Optional[SubscriptionStatus],
        current_period_start: Optional[datetime],
        current_period_end: Optional[datetime],
        cancel_at_period_end: Optional[bool] = None,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET status = COALESCE(%s, status),
                    current_period_start = COALESCE(%s, current_period_start),
                    current_period_end = COALESCE(%s, current_period_end),
                    cancel_at_period_end = COALESCE(%s, cancel_at_period_end),
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (
                    status.value if status else None,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                    subscription_id,
                ),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_subscriptions(self, user_id: str, *, limit: int = 20) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def get_provider_plan_id(
        self,
        provider: str,
        tier: str,
        *,
        period: str,
        amount: int,
        currency: str,
    ) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT provider_plan_id
                FROM provider_plans
                WHERE provider = %s AND tier = %s AND period = %s AND amount = %s AND currency = %s
                """,
                (provider, tier, period, amount, currency),
            )
            row = cursor.fetchone()
            return row["provider_plan_id"] if row else None

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
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO provider_plans (provider, tier, period, amount, currency, provider_plan_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, tier, period, amount, currency) DO UPDATE
                    SET provider_plan_id = provider_plans.provider_plan_id
                RETURNING provider_plan_id
                """,
                (provider, tier, period, amount, currency, provider_plan_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist provider plan")
            return row["provider_plan_id"]

    def get_voucher_by_code(self, code: str) -> Optional[Voucher]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM vouchers WHERE code = %s", (code,))
            row = cursor.fetchone()
            return _row_to_voucher(row) if row else None

    def redeem_voucher(self, voucher_id: str, *, user_id: str, redeemed_at: datetime) -> Optional[Voucher]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE vouchers
                SET status = 'redeemed', redeemed_by = %s, redeemed_at = %s
                WHERE id = %s
                  AND status = 'available'
                  AND (expires_at IS NULL OR expires_at > %s)
                RETURNING *
                """,
                (user_id, redeemed_at, voucher_id, redeemed_at),
            )
            row = cursor.fetchone()
            return _row_to_voucher(row) if row else None

    def record_provider_event(self, event: ProviderEvent) -> Tuple[ProviderEvent, bool]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO provider_events (
                    id,
                    provider,
                    event_type,
                    external_event_id,
                    payload,
                    signature_valid,
                    result,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, external_event_id) DO NOTHING
                RETURNING *
                """,
                (
                    event.id,
                    event.provider,
                    event.event_type,
                    event.external_event_id,
                    psycopg2.extras.Json(event.payload),
                    event.signature_valid,
                    event.result.value,
                    event.received_at,
                ),
            )
            row = cursor.fetchone()
            if row is not None:
                return _row_to_provider_event(row), True
            cursor.execute(
                "SELECT * FROM provider_events WHERE provider = %s AND external_event_id = %s",
                (event.provider, event.external_event_id),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to record provider event")
            return _row_to_provider_event(existing), False

    def refresh_provider_event(
        self,
        event_id: str,
        *,
        payload: Dict[str, Any],
        signature_valid: bool,
    ) -> Optional[ProviderEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provider_events
                SET payload = %s, signature_valid = %s
                WHERE id = %s AND result <> 'success'
                RETURNING *
                """,
                (psycopg2.extras.Json(payload), signature_valid, event_id),
            )
            row = cursor.fetchone()
            return _row_to_provider_event(row) if row else None

    def mark_provider_event(
        self,
        event_id: str,
        *,
        result: ProviderEventResult,
        error_message: Optional[str],
        processed_at: datetime,
    ) -> Optional[ProviderEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provider_events
                SET result = %s, error_message = %s, processed_at = %s
                WHERE id = %s AND result <> 'success'
                RETURNING *
                """,
                (result.value, error_message, processed_at, event_id),
            )
            row = cursor.fetchone()
            return _row_to_provider_event(row) if row else None

    def list_pending_provider_events(self, *, limit: int = 25) -> List[ProviderEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM provider_events
                WHERE signature_valid AND result <> 'success'
                ORDER BY received_at ASC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_provider_event(row) for row in rows]


__all__ = ["PostgresBillingRepository"]
