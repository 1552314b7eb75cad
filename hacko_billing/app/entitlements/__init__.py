"""Content entitlement rules, access decisions and grant records."""

from .cache import AccessDecisionCache, InMemoryAccessDecisionCache
from .catalog import (
    CatalogDefault,
    EntitlementCatalog,
    PlanProduct,
    build_plan_products,
    plan_hierarchy_from_config,
    tier_for_product,
)
from .decision import evaluate_access
from .models import (
    AccessDecision,
    AccessReason,
    AccessSnapshot,
    ContentEntitlementRule,
    ContentGrant,
    GrantOrigin,
    PlanGrant,
    PlanHierarchy,
    REASON_MESSAGES,
    reason_message,
)
from .service import AccessDecisionService, EntitlementReader, SnapshotUnavailableError

__all__ = [
    "AccessDecision",
    "AccessDecisionCache",
    "AccessDecisionService",
    "AccessReason",
    "AccessSnapshot",
    "CatalogDefault",
    "ContentEntitlementRule",
    "ContentGrant",
    "EntitlementCatalog",
    "EntitlementReader",
    "GrantOrigin",
    "InMemoryAccessDecisionCache",
    "PlanGrant",
    "PlanHierarchy",
    "PlanProduct",
    "REASON_MESSAGES",
    "SnapshotUnavailableError",
    "build_plan_products",
    "evaluate_access",
    "plan_hierarchy_from_config",
    "reason_message",
    "tier_for_product",
]
