# Storage Module - Hot Tier
#
# Bounded in-memory map of the indicators most recently matched or
# inserted.  LRU eviction (OrderedDict), O(1) point lookups.  The map's
# own lock is held only for the dict operation itself; read-modify-write
# sequences across tiers take the per-key lock from ``KeyLockTable``.

import threading
from collections import OrderedDict
from typing import Dict, Hashable, List, Optional, Tuple

from ..intel.models import Indicator, IndicatorType

Key = Tuple[IndicatorType, str]


class KeyLockTable:
    """Striped per-key locks.

    A fixed pool of re-entrant locks; a key always maps to the same
    stripe, so two writers of one key serialize while writers of
    unrelated keys rarely contend.
    """

    def __init__(self, stripes: int = 256):
        self._locks = [threading.RLock() for _ in range(stripes)]

    def lock_for(self, key: Hashable) -> threading.RLock:
        return self._locks[hash(key) % len(self._locks)]


class HotTier:
    """In-memory LRU of indicators.

    Args:
        capacity: Maximum number of indicators held.
    """

    def __init__(self, capacity: int = 100_000):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._lock = threading.Lock()
        # OrderedDict used as an LRU: most recently used at the end
        self._items: "OrderedDict[Key, Indicator]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: Key) -> Optional[Indicator]:
        with self._lock:
            ind = self._items.get(key)
            if ind is None:
                self._misses += 1
            else:
                self._hits += 1
            return ind

    def touch(self, key: Key) -> None:
        """Mark ``key`` as recently matched."""
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)

    def put(self, indicator: Indicator) -> List[Indicator]:
        """Insert or replace; returns any indicators evicted to make room."""
        evicted: List[Indicator] = []
        with self._lock:
            self._items[indicator.key] = indicator
            self._items.move_to_end(indicator.key)
            while len(self._items) > self.capacity:
                _, old = self._items.popitem(last=False)
                evicted.append(old)
                self._evictions += 1
        return evicted

    def remove(self, key: Key) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            n = len(self._items)
            self._items.clear()
            return n

    def __contains__(self, key: Key) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "capacity": self.capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
