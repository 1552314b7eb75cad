"""Domain models for content entitlements and access decisions."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanHierarchy:
    """Ordered list of plan tiers; a tier's rank is its position."""

    def __init__(self, tiers: Sequence[str]) -> None:
        if not tiers:
            raise ValueError("at least one plan tier is required")
        self._tiers: Tuple[str, ...] = tuple(tier.lower() for tier in tiers)
        self._ranks = {tier: index for index, tier in enumerate(self._tiers)}

    @property
    def tiers(self) -> Tuple[str, ...]:
        return self._tiers

    @property
    def lowest(self) -> str:
        return self._tiers[0]

    def is_known(self, tier: Optional[str]) -> bool:
        return bool(tier) and tier.lower() in self._ranks

    def rank(self, tier: Optional[str]) -> int:
        """Rank of a user's tier; unknown or missing tiers rank lowest."""

        if not tier:
            return 0
        return self._ranks.get(tier.lower(), 0)

    def satisfies(self, user_tier: Optional[str], required_tier: str) -> bool:
        required_rank = self._ranks.get(required_tier.lower())
        if required_rank is None:
            return False
        return self.rank(user_tier) >= required_rank

    def highest(self, tiers: Iterable[Optional[str]]) -> str:
        best = self.lowest
        for tier in tiers:
            if tier and self.is_known(tier) and self.rank(tier) > self.rank(best):
                best = tier.lower()
        return best


class AccessReason(str, Enum):
    """Reason codes attached to every access decision."""

    NO_AUTH = "NO_AUTH"
    NO_ENTITLEMENT = "NO_ENTITLEMENT"
    FREE_CHALLENGE = "FREE_CHALLENGE"
    INACTIVE = "INACTIVE"
    PLAN_OK = "PLAN_OK"
    PURCHASE_OK = "PURCHASE_OK"
    UPGRADE_OR_BUY = "UPGRADE_OR_BUY"
    FREE_RULE = "FREE_RULE"


class ContentEntitlementRule(BaseModel):
    """Pricing and plan rule for a single content item."""

    content_type: str
    content_id: str
    required_plan: Optional[str] = None
    individual_price: Optional[int] = Field(default=None, ge=0)
    active: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("required_plan")
    @classmethod
    def _normalize_plan(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip().lower()


class AccessSnapshot(BaseModel):
    """Everything the decision function needs, however it was read."""

    rule: Optional[ContentEntitlementRule] = None
    plan_tiers: Tuple[str, ...] = ()
    has_grant: bool = False

    model_config = ConfigDict(frozen=True)


class AccessDecision(BaseModel):
    """Allow/deny verdict for a user and content item."""

    allow: bool
    reason: AccessReason
    required_plan: Optional[str] = None
    individual_price: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class GrantOrigin(str, Enum):
    """What produced a plan grant."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    VOUCHER = "voucher"


class ContentGrant(BaseModel):
    """Proof of purchase for one content item, tied to the originating purchase."""

    user_id: str
    content_type: str
    content_id: str
    origin_purchase_id: str
    price_paid: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    payment_ref: Optional[str] = None
    id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    revoked_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class PlanGrant(BaseModel):
    """A plan tier held by a user because of a purchase or subscription."""

    user_id: str
    tier: str
    origin: GrantOrigin
    origin_id: str
    id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    revoked_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def is_active(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


def cache_tags(user_id: Optional[str], content_type: str, content_id: str) -> Set[str]:
    tags = {f"content:{content_type}:{content_id}"}
    if user_id:
        tags.add(f"user:{user_id}")
    return tags


REASON_MESSAGES: Dict[str, str] = {
    AccessReason.NO_AUTH.value: "Sign in to access this content.",
    AccessReason.NO_ENTITLEMENT.value: "This content is not available.",
    AccessReason.FREE_CHALLENGE.value: "This challenge is free.",
    AccessReason.INACTIVE.value: "This content is currently unavailable.",
    AccessReason.PLAN_OK.value: "Included in your plan.",
    AccessReason.PURCHASE_OK.value: "You own this content.",
    AccessReason.UPGRADE_OR_BUY.value: "Upgrade your plan or buy this content to unlock it.",
    AccessReason.FREE_RULE.value: "This content is free.",
    "FREE": "This content is free; no payment is needed.",
    "ALREADY_ON_PLAN": "You are already on this plan or a higher one.",
}


def reason_message(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    return REASON_MESSAGES.get(reason)
