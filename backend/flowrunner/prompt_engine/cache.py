"""Process-local TTL cache with capacity eviction.

Owned by whichever component constructs it; never shared through module
state.  The clock is injectable so tests can step time deterministically.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[V]):
    """Insertion-ordered map whose entries expire after ``ttl_seconds``.

    When a write pushes the size above ``max_size``, expired entries are
    purged first and then the oldest entries are evicted until the cache is
    back at capacity.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[V]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _is_fresh(self, entry: _Entry[V]) -> bool:
        return self._clock() - entry.stored_at < self.ttl_seconds

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not self._is_fresh(entry):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def peek(self, key: str) -> V | None:
        """Like :meth:`get` but without touching hit/miss counters."""
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.value

    def set(self, key: str, value: V) -> None:
        self._entries.pop(key, None)
        self._entries[key] = _Entry(value=value, stored_at=self._clock())
        if len(self._entries) > self.max_size:
            self._evict()

    def _evict(self) -> None:
        for key in [k for k, e in self._entries.items() if not self._is_fresh(e)]:
            del self._entries[key]
            self.evictions += 1
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.evictions += 1

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate(self, predicate: Callable[[str], bool] | None = None) -> int:
        """Drop every entry (or those whose key matches *predicate*); returns the count."""
        if predicate is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        doomed = [k for k in self._entries if predicate(k)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries.keys()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def stats(self) -> dict[str, float]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": (self.hits / total) if total else 0.0,
        }
