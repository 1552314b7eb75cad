"""Catalog lookups for content rules and purchasable plan products."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

from ..config import BillingConfig
from .models import AccessReason, ContentEntitlementRule, PlanHierarchy


class RuleReader(Protocol):
    """Read access to stored content entitlement rules."""

    def get_rule(self, content_type: str, content_id: str) -> Optional[ContentEntitlementRule]:
        ...


@dataclass(frozen=True)
class CatalogDefault:
    """Verdict applied when a content item has no registered rule."""

    allow: bool
    reason: AccessReason


@dataclass(frozen=True)
class PlanProduct:
    """A plan tier that can be bought as a one-off upgrade."""

    tier: str
    price_units: int

    @property
    def product_id(self) -> str:
        return self.tier


class EntitlementCatalog:
    """Resolves content rules and the default policy for unregistered content.

    Unregistered content in a free-by-default category (challenges, unless
    configured otherwise) is open. Unregistered content in every other
    category is closed. Registered content with neither a plan requirement
    nor a price is open.
    """

    def __init__(
        self,
        rules: RuleReader,
        *,
        free_content_types: Iterable[str] = ("challenge",),
    ) -> None:
        self._rules = rules
        self._free_content_types = frozenset(item.lower() for item in free_content_types)

    @property
    def free_content_types(self) -> frozenset[str]:
        return self._free_content_types

    def get_rule(self, content_type: str, content_id: str) -> Optional[ContentEntitlementRule]:
        return self._rules.get_rule(content_type, content_id)

    def default_for(self, content_type: str) -> CatalogDefault:
        if content_type.lower() in self._free_content_types:
            return CatalogDefault(allow=True, reason=AccessReason.FREE_CHALLENGE)
        return CatalogDefault(allow=False, reason=AccessReason.NO_ENTITLEMENT)


def build_plan_products(config: BillingConfig) -> Dict[str, PlanProduct]:
    """Every tier above the lowest with a configured price is purchasable."""

    products: Dict[str, PlanProduct] = {}
    for tier in config.plan_tiers[1:]:
        price = config.plan_prices.get(tier)
        if not price:
            continue
        products[tier] = PlanProduct(tier=tier, price_units=price)
    return products


def plan_hierarchy_from_config(config: BillingConfig) -> PlanHierarchy:
    return PlanHierarchy(config.plan_tiers)


def tier_for_product(products: Dict[str, PlanProduct], product_id: Optional[str]) -> Optional[str]:
    if not product_id:
        return None
    product = products.get(product_id.lower())
    return product.tier if product else None


__all__ = [
    "CatalogDefault",
    "EntitlementCatalog",
    "PlanProduct",
    "RuleReader",
    "build_plan_products",
    "plan_hierarchy_from_config",
    "tier_for_product",
]
