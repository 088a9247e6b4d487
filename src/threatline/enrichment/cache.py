# Enrichment Module - Result Cache
#
# Thread-safe TTL cache keyed by (enricher name, indicator value).  Entries
# are bounded: once ``max_entries`` is reached the least recently used
# entry is evicted, expired or not.

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional


class _CacheEntry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: float, now: float):
        self.value = value
        self.expires_at = now + ttl


class TTLCache:
    """Thread-safe in-memory cache with per-key TTL (seconds) and LRU bound."""

    def __init__(
        self,
        default_ttl: float = 3600.0,
        max_entries: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._store: "OrderedDict[Hashable, _CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() > entry.expires_at:
                del self._store[key]
                self._misses += 1
                return None
            self._store.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._store[key] = _CacheEntry(value, ttl or self._default_ttl, self._clock())
            self._store.move_to_end(key)
            while len(self._store) > self._max_entries:
                self._store.popitem(last=False)
                self._evictions += 1

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            n = len(self._store)
            self._store.clear()
            return n

    @property
    def size(self) -> int:
        with self._lock:
            # Purge expired while counting
            now = self._clock()
            expired = [k for k, v in self._store.items() if now > v.expires_at]
            for k in expired:
                del self._store[k]
            return len(self._store)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
