"""
Generic TTL cache shared by the Symbolic Index, Context Builder and
Embedding Service.

Entries expire after ``ttl_seconds`` and the cache never holds more than
``max_size`` entries; when full, the oldest inserted entry is evicted.
A miss is never an error: :meth:`TTLCache.get` simply returns None.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Capacity-bounded, time-boxed key/value cache.

    Parameters
    ----------
    ttl_seconds:
        Lifetime of an entry.  ``None`` disables expiry.
    max_size:
        Maximum number of live entries.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = 300.0,
        max_size: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_size = max(1, max_size)
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, value = entry
        if self._ttl is not None and self._clock() - stored_at > self._ttl:
            del self._data[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V) -> None:
        if key in self._data:
            del self._data[key]
        self._data[key] = (self._clock(), value)
        while len(self._data) > self._max_size:
            self._data.popitem(last=False)
            self.evictions += 1

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        return self._ttl is None or self._clock() - entry[0] <= self._ttl

    def __len__(self) -> int:
        return len(self._data)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """
        Evict every key for which *predicate* returns True.

        Returns
        -------
        int
            Number of evicted entries.
        """
        doomed = [k for k in self._data if predicate(k)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def invalidate_containing(self, fragment: str) -> int:
        """Evict every string key that contains *fragment*."""
        return self.invalidate(lambda k: isinstance(k, str) and fragment in k)

    def purge_expired(self) -> int:
        if self._ttl is None:
            return 0
        now = self._clock()
        return self.invalidate(lambda k: now - self._data[k][0] > self._ttl)

    def clear(self) -> None:
        self._data.clear()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """
        Return cache statistics.

        Returns
        -------
        dict
            Keys: size, max_size, ttl_seconds, hits, misses, hit_rate, evictions.
        """
        lookups = self.hits + self.misses
        return {
            "size": len(self._data),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            "evictions": self.evictions,
        }
