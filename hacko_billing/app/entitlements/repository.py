"""Persistence layer for content rules, plan tiers and grants."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

import psycopg2

from ..database import PostgresRepository
from .models import AccessSnapshot, ContentEntitlementRule, ContentGrant, GrantOrigin, PlanGrant
from .service import SnapshotUnavailableError


def _row_to_rule(row: dict) -> ContentEntitlementRule:
    return ContentEntitlementRule(
        content_type=row["content_type"],
        content_id=row["content_id"],
        required_plan=row.get("required_plan"),
        individual_price=row.get("individual_price"),
        active=row.get("active") is not False,
    )


def _row_to_content_grant(row: dict) -> ContentGrant:
    return ContentGrant(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        content_type=row["content_type"],
        content_id=row["content_id"],
        origin_purchase_id=str(row["origin_purchase_id"]),
        price_paid=int(row["price_paid"]),
        currency=row["currency"],
        payment_ref=row.get("payment_ref"),
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
    )


def _row_to_plan_grant(row: dict) -> PlanGrant:
    return PlanGrant(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        tier=row["tier"],
        origin=GrantOrigin(row["origin"]),
        origin_id=str(row["origin_id"]),
        expires_at=row.get("expires_at"),
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
    )


_PLAN_TIERS_SQL = """
    SELECT plan AS tier FROM user_plans WHERE user_id = %(user_id)s
    UNION ALL
    SELECT tier FROM plan_grants
    WHERE user_id = %(user_id)s
      AND revoked_at IS NULL
      AND (expires_at IS NULL OR expires_at > %(now)s)
"""


class PostgresEntitlementRepository(PostgresRepository):
    """Reads access inputs and writes grants in PostgreSQL."""

    def get_rule(self, content_type: str, content_id: str) -> Optional[ContentEntitlementRule]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT content_type, content_id, required_plan, individual_price, active
                FROM content_entitlements
                WHERE content_type = %s AND content_id = %s
                LIMIT 1
                """,
                (content_type, content_id),
            )
            row = cursor.fetchone()
            return _row_to_rule(row) if row else None

    def get_plan_tiers(self, user_id: str, *, now: datetime) -> Sequence[str]:
        with self._cursor() as cursor:
            cursor.execute(_PLAN_TIERS_SQL, {"user_id": user_id, "now": now})
            rows = cursor.fetchall() or []
            return [row["tier"] for row in rows if row.get("tier")]

    def has_active_grant(self, user_id: str, content_type: str, content_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM user_content_purchases
                WHERE user_id = %s
                  AND content_type = %s
                  AND content_id = %s
                  AND revoked_at IS NULL
                LIMIT 1
                """,
                (user_id, content_type, content_id),
            )
            return cursor.fetchone() is not None

    def fetch_access_snapshot(
        self,
        user_id: str,
        content_type: str,
        content_id: str,
        *,
        now: datetime,
    ) -> AccessSnapshot:
        """Read rule, plan tiers and grant existence in one round trip."""

        params = {
            "user_id": user_id,
            "content_type": content_type,
            "content_id": content_id,
            "now": now,
        }
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    f"""
                    SELECT
                        (
                            SELECT row_to_json(rule)
                            FROM (
                                SELECT content_type, content_id, required_plan, individual_price, active
                                FROM content_entitlements
                                WHERE content_type = %(content_type)s AND content_id = %(content_id)s
                                LIMIT 1
                            ) AS rule
                        ) AS rule,
                        ARRAY({_PLAN_TIERS_SQL}) AS plan_tiers,
                        EXISTS (
                            SELECT 1
                            FROM user_content_purchases
                            WHERE user_id = %(user_id)s
                              AND content_type = %(content_type)s
                              AND content_id = %(content_id)s
                              AND revoked_at IS NULL
                        ) AS has_grant
                    """,
                    params,
                )
                row = cursor.fetchone()
        except psycopg2.Error as exc:
            raise SnapshotUnavailableError(str(exc)) from exc

        if not row:
            raise SnapshotUnavailableError("access snapshot query returned no row")
        rule = _row_to_rule(row["rule"]) if row.get("rule") else None
        return AccessSnapshot(
            rule=rule,
            plan_tiers=tuple(tier for tier in row.get("plan_tiers") or [] if tier),
            has_grant=bool(row.get("has_grant")),
        )

    def upsert_content_grant(self, grant: ContentGrant) -> ContentGrant:
        """Insert a content grant once per originating purchase."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO user_content_purchases (
                    user_id,
                    content_type,
                    content_id,
                    origin_purchase_id,
                    price_paid,
                    currency,
                    payment_ref
                )
                VALUES (%(user_id)s, %(content_type)s, %(content_id)s, %(origin_purchase_id)s,
                        %(price_paid)s, %(currency)s, %(payment_ref)s)
                ON CONFLICT (origin_purchase_id) DO UPDATE SET
                    payment_ref = COALESCE(user_content_purchases.payment_ref, EXCLUDED.payment_ref)
                RETURNING *
                """,
                {
                    "user_id": grant.user_id,
                    "content_type": grant.content_type,
                    "content_id": grant.content_id,
                    "origin_purchase_id": grant.origin_purchase_id,
                    "price_paid": grant.price_paid,
                    "currency": grant.currency,
                    "payment_ref": grant.payment_ref,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist content grant")
            return _row_to_content_grant(row)

    def upsert_plan_grant(self, grant: PlanGrant) -> PlanGrant:
        """Insert or extend the plan grant for one purchase or subscription."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO plan_grants (user_id, tier, origin, origin_id, expires_at)
                VALUES (%(user_id)s, %(tier)s, %(origin)s, %(origin_id)s, %(expires_at)s)
                ON CONFLICT (origin, origin_id) DO UPDATE SET
                    tier = EXCLUDED.tier,
                    expires_at = EXCLUDED.expires_at,
                    revoked_at = NULL
                RETURNING *
                """,
                {
                    "user_id": grant.user_id,
                    "tier": grant.tier,
                    "origin": grant.origin.value,
                    "origin_id": grant.origin_id,
                    "expires_at": grant.expires_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist plan grant")
            return _row_to_plan_grant(row)

    def revoke_content_grants(self, origin_purchase_id: str, *, revoked_at: datetime) -> List[ContentGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_content_purchases
                SET revoked_at = %s
                WHERE origin_purchase_id = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (revoked_at, origin_purchase_id),
            )
            rows = cursor.fetchall() or []
            return [_row_to_content_grant(row) for row in rows]

    def revoke_plan_grants(
        self,
        origin: GrantOrigin,
        origin_id: str,
        *,
        revoked_at: datetime,
    ) -> List[PlanGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE plan_grants
                SET revoked_at = %s
                WHERE origin = %s AND origin_id = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (revoked_at, origin.value, origin_id),
            )
            rows = cursor.fetchall() or []
            return [_row_to_plan_grant(row) for row in rows]

    def list_content_grants(self, user_id: str, *, limit: int = 100) -> List[ContentGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_content_purchases
                WHERE user_id = %s AND revoked_at IS NULL
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_content_grant(row) for row in rows]

    def list_plan_grants(self, user_id: str, *, now: datetime) -> List[PlanGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM plan_grants
                WHERE user_id = %s
                  AND revoked_at IS NULL
                  AND (expires_at IS NULL OR expires_at > %s)
                ORDER BY created_at DESC
                """,
                (user_id, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_plan_grant(row) for row in rows]


__all__ = ["PostgresEntitlementRepository"]
