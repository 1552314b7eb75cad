"""Bounded TTL cache for access decisions."""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Iterable, Optional, Protocol, Set, Tuple

from .models import AccessDecision

CacheKey = Tuple[str, str, str]


class AccessDecisionCache(Protocol):
    """Protocol describing cache operations used by the access service."""

    def generation(self) -> int:
        ...

    def get(self, key: CacheKey) -> Optional[AccessDecision]:
        ...

    def set(
        self,
        key: CacheKey,
        value: AccessDecision,
        tags: Set[str],
        *,
        generation: Optional[int] = None,
    ) -> None:
        ...

    def invalidate(self, tags: Iterable[str]) -> None:
        ...


@dataclass
class _CacheEntry:
    value: AccessDecision
    expires_at: datetime
    tags: Set[str]

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryAccessDecisionCache:
    """Per-process cache with a fixed TTL and a hard entry limit.

    Keys are ``(user_id, content_type, content_id)``. Entries are tagged by
    ``content:<type>:<id>`` and ``user:<id>`` so grants and revocations can
    drop everything they affect. Oldest entries are evicted first once
    ``max_entries`` is reached.

    Callers read :meth:`generation` before computing a decision and pass it
    back to :meth:`set`; a decision whose tags were invalidated in between is
    not stored.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 30,
        max_entries: int = 10_000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl = timedelta(seconds=max(ttl_seconds, 0))
        self._max_entries = max_entries
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: "OrderedDict[CacheKey, _CacheEntry]" = OrderedDict()
        self._generation = 0
        self._invalidated_at: "OrderedDict[str, int]" = OrderedDict()
        # Highest generation among forgotten tags; unknown tags count as invalidated then.
        self._forgotten_generation = 0
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl > timedelta(0)

    def __len__(self) -> int:
        return len(self._entries)

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: CacheKey) -> Optional[AccessDecision]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if entry.is_expired(self._clock()):
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(
        self,
        key: CacheKey,
        value: AccessDecision,
        tags: Set[str],
        *,
        generation: Optional[int] = None,
    ) -> None:
        if not self.enabled:
            return
        entry = _CacheEntry(value=value, expires_at=self._clock() + self._ttl, tags=set(tags))
        with self._lock:
            if generation is not None and self._invalidated_since(entry.tags, generation):
                return
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, tags: Iterable[str]) -> None:
        tag_set = set(tags)
        if not tag_set:
            return
        with self._lock:
            self._generation += 1
            for tag in tag_set:
                self._invalidated_at.pop(tag, None)
                self._invalidated_at[tag] = self._generation
            while len(self._invalidated_at) > self._max_entries:
                _, forgotten = self._invalidated_at.popitem(last=False)
                self._forgotten_generation = max(self._forgotten_generation, forgotten)

            keys_to_delete = [
                key
                for key, entry in self._entries.items()
                if entry.tags.intersection(tag_set)
            ]
            for key in keys_to_delete:
                self._entries.pop(key, None)

    def _invalidated_since(self, tags: Set[str], generation: int) -> bool:
        return any(
            self._invalidated_at.get(tag, self._forgotten_generation) > generation
            for tag in tags
        )
