"""In-memory LRU cache with optional TTL."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Generic, Hashable, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata."""
    value: T
    created_at: float
    ttl_seconds: float | None

    @property
    def is_expired(self) -> bool:
        if self.ttl_seconds is None:
            return False
        return time.monotonic() > self.created_at + self.ttl_seconds

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.created_at


@dataclass
class LRUCache:
    """
    Bounded cache with least-recently-used eviction.

    Backed by an OrderedDict (hash map + doubly linked list), so lookup,
    touch and eviction are all O(1). Entries may carry a TTL; expired
    entries read as misses and are dropped on access.
    """
    max_size: int = 1000

    # None = entries never expire
    default_ttl_seconds: float | None = None

    _store: OrderedDict[Hashable, CacheEntry] = field(default_factory=OrderedDict, init=False)

    # Stats
    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)
    _evictions: int = field(default=0, init=False)

    def get(self, key: Hashable) -> Any | None:
        """Return the value and mark it most recently used, or None."""
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired:
            del self._store[key]
            self._misses += 1
            return None

        self._store.move_to_end(key)
        self._hits += 1
        return entry.value

    def __contains__(self, key: Hashable) -> bool:
        entry = self._store.get(key)
        return entry is not None and not entry.is_expired

    def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        """Insert or replace a value, evicting the oldest entries if over capacity."""
        if self.max_size <= 0:
            return

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        self._store[key] = CacheEntry(value=value, created_at=time.monotonic(), ttl_seconds=ttl)
        self._store.move_to_end(key)

        while len(self._store) > self.max_size:
            self._store.popitem(last=False)
            self._evictions += 1

    def delete(self, key: Hashable) -> bool:
        """Delete a key from cache."""
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all entries."""
        self._store.clear()

    def keys(self) -> list[Hashable]:
        """Keys from least to most recently used."""
        return list(self._store.keys())

    @property
    def size(self) -> int:
        """Current number of entries."""
        return len(self._store)

    @property
    def stats(self) -> dict:
        """Cache statistics."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0

        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate_percent": round(hit_rate, 2),
        }
