"""The single branching function behind every access decision.

Both the atomic single-query path and the three-read reconstruction build an
:class:`AccessSnapshot` and hand it to :func:`evaluate_access`. Nothing else
in the code base is allowed to branch on rules, plans and grants.
"""
from __future__ import annotations

from typing import Optional

from .catalog import CatalogDefault
from .models import AccessDecision, AccessReason, AccessSnapshot, PlanHierarchy


def evaluate_access(
    snapshot: AccessSnapshot,
    *,
    authenticated: bool,
    hierarchy: PlanHierarchy,
    default: CatalogDefault,
) -> AccessDecision:
    """Combine catalog rule, effective plan and grant into a verdict."""

    rule = snapshot.rule
    required_plan: Optional[str] = rule.required_plan if rule else None
    individual_price: Optional[int] = rule.individual_price if rule else None

    if not authenticated:
        return AccessDecision(
            allow=False,
            reason=AccessReason.NO_AUTH,
            required_plan=required_plan,
            individual_price=individual_price,
        )

    if rule is None:
        return AccessDecision(allow=default.allow, reason=default.reason)

    if not rule.active:
        return AccessDecision(
            allow=False,
            reason=AccessReason.INACTIVE,
            required_plan=required_plan,
            individual_price=individual_price,
        )

    effective_plan = hierarchy.highest(snapshot.plan_tiers)
    if required_plan and hierarchy.satisfies(effective_plan, required_plan):
        return AccessDecision(
            allow=True,
            reason=AccessReason.PLAN_OK,
            required_plan=required_plan,
            individual_price=individual_price,
        )

    if individual_price is not None:
        reason = AccessReason.PURCHASE_OK if snapshot.has_grant else AccessReason.UPGRADE_OR_BUY
        return AccessDecision(
            allow=snapshot.has_grant,
            reason=reason,
            required_plan=required_plan,
            individual_price=individual_price,
        )

    if required_plan:
        return AccessDecision(
            allow=False,
            reason=AccessReason.UPGRADE_OR_BUY,
            required_plan=required_plan,
            individual_price=None,
        )

    return AccessDecision(allow=True, reason=AccessReason.FREE_RULE)


__all__ = ["evaluate_access"]
