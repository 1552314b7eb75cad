"""Service answering "may this user open this content?"."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from .cache import AccessDecisionCache
from .catalog import EntitlementCatalog
from .decision import evaluate_access
from .models import (
    AccessDecision,
    AccessSnapshot,
    ContentEntitlementRule,
    PlanHierarchy,
    cache_tags,
)

logger = logging.getLogger(__name__)


class SnapshotUnavailableError(RuntimeError):
    """Raised when the single-query access snapshot cannot be computed."""


class EntitlementReader(Protocol):
    """Read side of the entitlement store."""

    def get_rule(self, content_type: str, content_id: str) -> Optional[ContentEntitlementRule]:
        ...

    def get_plan_tiers(self, user_id: str, *, now: datetime) -> Sequence[str]:
        ...

    def has_active_grant(self, user_id: str, content_type: str, content_id: str) -> bool:
        ...

    def fetch_access_snapshot(
        self,
        user_id: str,
        content_type: str,
        content_id: str,
        *,
        now: datetime,
    ) -> AccessSnapshot:
        ...


class AccessDecisionService:
    """Computes, caches and invalidates access decisions."""

    def __init__(
        self,
        reader: EntitlementReader,
        catalog: EntitlementCatalog,
        hierarchy: PlanHierarchy,
        *,
        cache: Optional[AccessDecisionCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._reader = reader
        self._catalog = catalog
        self._hierarchy = hierarchy
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def hierarchy(self) -> PlanHierarchy:
        return self._hierarchy

    def decide(self, user_id: Optional[str], content_type: str, content_id: str) -> AccessDecision:
        """Return the access verdict, preferring the single-query path."""

        if not user_id:
            return self._evaluate(
                AccessSnapshot(rule=self._catalog.get_rule(content_type, content_id)),
                authenticated=False,
                content_type=content_type,
            )

        key = (user_id, content_type, content_id)
        generation: Optional[int] = None
        if self._cache is not None:
            generation = self._cache.generation()
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        try:
            decision = self.decide_atomic(user_id, content_type, content_id)
        except SnapshotUnavailableError as exc:
            logger.warning(
                "Atomic access snapshot failed; reconstructing from reads",
                extra={"content_type": content_type, "content_id": content_id, "error": str(exc)},
            )
            decision = self.decide_reconstructed(user_id, content_type, content_id)

        if self._cache is not None:
            self._cache.set(
                key,
                decision,
                cache_tags(user_id, content_type, content_id),
                generation=generation,
            )
        return decision

    def decide_atomic(self, user_id: str, content_type: str, content_id: str) -> AccessDecision:
        snapshot = self._reader.fetch_access_snapshot(
            user_id, content_type, content_id, now=self._clock()
        )
        return self._evaluate(snapshot, authenticated=True, content_type=content_type)

    def decide_reconstructed(self, user_id: str, content_type: str, content_id: str) -> AccessDecision:
        plan_tiers = tuple(self._reader.get_plan_tiers(user_id, now=self._clock()))
        rule = self._catalog.get_rule(content_type, content_id)
        has_grant = self._reader.has_active_grant(user_id, content_type, content_id)
        snapshot = AccessSnapshot(rule=rule, plan_tiers=plan_tiers, has_grant=has_grant)
        return self._evaluate(snapshot, authenticated=True, content_type=content_type)

    def effective_plan(self, user_id: str) -> str:
        return self._hierarchy.highest(self._reader.get_plan_tiers(user_id, now=self._clock()))

    def invalidate_content(self, content_type: str, content_id: str) -> None:
        if self._cache is None:
            return
        logger.debug("Invalidate access decisions for %s:%s", content_type, content_id)
        self._cache.invalidate({f"content:{content_type}:{content_id}"})

    def invalidate_user(self, user_id: str) -> None:
        if self._cache is None:
            return
        logger.debug("Invalidate access decisions for user %s", user_id)
        self._cache.invalidate({f"user:{user_id}"})

    def _evaluate(
        self,
        snapshot: AccessSnapshot,
        *,
        authenticated: bool,
        content_type: str,
    ) -> AccessDecision:
        return evaluate_access(
            snapshot,
            authenticated=authenticated,
            hierarchy=self._hierarchy,
            default=self._catalog.default_for(content_type),
        )


__all__ = [
    "AccessDecisionService",
    "EntitlementReader",
    "SnapshotUnavailableError",
]
