"""
TTL Cache
=========

A small read-mostly cache shared across concurrent pipeline runs.

Two caches in the pipeline are shared between requests: resolved agent
preferences (LLM router) and discovered tool lists (tool executor). Both
use this class.

Update model (copy-on-write):
    Readers always see a complete, immutable snapshot. A write builds a new
    dict from the current snapshot plus the change and swaps the reference
    in one assignment. A reader holding the old snapshot keeps a consistent
    view; it never observes a half-applied update.

Entries expire after `ttl_seconds`; the cache is bounded by `max_entries`
(oldest insertions are dropped first when the bound is hit).
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value with its insertion and expiry times (monotonic clock)."""
    value: V
    stored_at: float
    expires_at: float


class TTLCache(Generic[V]):
    """
    Bounded TTL cache with copy-on-write updates.

    Example:
        cache = TTLCache(ttl_seconds=300, max_entries=1000)
        cache.set(("agent-1", "conv-9"), tools)
        tools = cache.get(("agent-1", "conv-9"))
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            ttl_seconds: Lifetime of an entry
            max_entries: Maximum number of live entries
            clock: Time source, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}

    def get_entry(self, key: Hashable) -> CacheEntry[V] | None:
        """Get the live entry for `key`, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self.invalidate(key)
            return None
        return entry

    def get(self, key: Hashable) -> V | None:
        """Get the cached value for `key`, or None."""
        entry = self.get_entry(key)
        return entry.value if entry else None

    def set(self, key: Hashable, value: V) -> None:
        """Store `value` under `key`, replacing the snapshot atomically."""
        now = self._clock()
        snapshot = {
            k: e for k, e in self._entries.items()
            if e.expires_at > now and k != key
        }

        # Drop oldest insertions once the bound is reached
        while len(snapshot) >= self.max_entries:
            oldest = min(snapshot, key=lambda k: snapshot[k].stored_at)
            del snapshot[oldest]

        snapshot[key] = CacheEntry(value=value, stored_at=now, expires_at=now + self.ttl_seconds)
        self._entries = snapshot

    def invalidate(self, key: Hashable) -> None:
        """Remove one key (no-op if absent)."""
        if key not in self._entries:
            return
        self._entries = {k: e for k, e in self._entries.items() if k != key}

    def clear(self) -> None:
        """Remove everything."""
        self._entries = {}

    def snapshot(self) -> dict[Hashable, Any]:
        """Get a read-only view of the live values (for diagnostics)."""
        now = self._clock()
        return {k: e.value for k, e in self._entries.items() if e.expires_at > now}

    def __len__(self) -> int:
        return len(self.snapshot())
