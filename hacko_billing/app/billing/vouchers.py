"""Voucher code redemption."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ..entitlements.catalog import tier_for_product
from .errors import InvalidRequestError, PurchaseStateError, VoucherError
from .grants import EntitlementGrantService
from .models import BillingAuditEvent, BillingAuditEventType, Voucher, VoucherRedemption, VoucherStatus
from .protocols import BillingEventLogger, BillingRepository

logger = logging.getLogger("billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VoucherService:
    """Redeems a voucher code for exactly one user.

    The ``available -> redeemed`` transition is a conditional update, so two
    users racing for one code cannot both win. Redeeming a code the caller
    already owns re-applies the grant instead of failing.
    """

    repository: BillingRepository
    grants: EntitlementGrantService
    event_logger: BillingEventLogger
    clock: Callable[[], datetime] = _utcnow

    def redeem(self, user_id: str, code: str) -> VoucherRedemption:
        code = (code or "").strip()
        if not user_id or not code:
            raise InvalidRequestError("MISSING_FIELDS", "A voucher code is required.")

        voucher = self.repository.get_voucher_by_code(code)
        if voucher is None:
            raise VoucherError("INVALID_CODE", "Unknown voucher code.")
        if tier_for_product(self.grants.plan_products, voucher.product_id) is None:
            raise PurchaseStateError(f"Voucher {voucher.code} references unknown plan {voucher.product_id!r}")

        now = self.clock()
        if voucher.status == VoucherStatus.AVAILABLE:
            if voucher.is_expired(now):
                raise VoucherError("EXPIRED", "This voucher has expired.")
            redeemed = self.repository.redeem_voucher(voucher.id, user_id=user_id, redeemed_at=now)
            if redeemed is not None:
                return self._grant(redeemed, user_id, already=False)
            # Lost the race or expired in between; decide from the stored row.
            voucher = self.repository.get_voucher_by_code(code) or voucher
            if voucher.status == VoucherStatus.AVAILABLE:
                raise VoucherError("EXPIRED", "This voucher has expired.")

        if voucher.redeemed_by != user_id:
            raise VoucherError("ALREADY_REDEEMED", "This voucher has already been redeemed.")
        return self._grant(voucher, user_id, already=True)

    def _grant(self, voucher: Voucher, user_id: str, *, already: bool) -> VoucherRedemption:
        grant = self.grants.grant_voucher(voucher, user_id)
        if not already:
            logger.info("Voucher %s redeemed by user %s", voucher.id, user_id, extra={"tier": grant.tier})
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.VOUCHER_REDEEMED,
                    actor_id=user_id,
                    metadata={"voucher_id": voucher.id, "tier": grant.tier},
                )
            )
        return VoucherRedemption(already=already, tier=grant.tier, expires_at=grant.expires_at)


__all__ = ["VoucherService"]
