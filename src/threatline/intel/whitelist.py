# Intel Module - Whitelist
#
# Operator-managed allow list.  Membership is itself an entry with an
# optional expiration; a whitelisted key is immune to aging and never
# produces a Detection.  Owned by the pipeline and injected into the
# lifecycle manager, detection engine and response orchestrator.

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import IndicatorType, ensure_utc, normalize_value, utcnow


@dataclass(frozen=True)
class WhitelistEntry:
    type: IndicatorType
    value: str
    reason: str = ""
    expires_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        ioc_type,
        value: str,
        reason: str = "",
        expires_at: Optional[datetime] = None,
    ) -> "WhitelistEntry":
        """Build an entry with a normalized value (and parsed type)."""
        t = ioc_type if isinstance(ioc_type, IndicatorType) else IndicatorType.parse(ioc_type)
        return cls(
            type=t,
            value=normalize_value(t, value),
            reason=reason,
            expires_at=ensure_utc(expires_at) if expires_at else None,
        )

    @property
    def key(self) -> Tuple[IndicatorType, str]:
        return (self.type, self.value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class Whitelist:
    """Thread-safe set of whitelist entries keyed by (type, value)."""

    def __init__(self, entries: Optional[Iterable[WhitelistEntry]] = None):
        self._lock = threading.RLock()
        self._entries: Dict[Tuple[IndicatorType, str], WhitelistEntry] = {}
        for entry in entries or []:
            self._entries[entry.key] = entry

    @classmethod
    def from_config(cls, configs) -> "Whitelist":
        return cls(
            WhitelistEntry.create(c.type, c.value, c.reason, c.expires_at)
            for c in configs
        )

    def add(self, entry: WhitelistEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    def remove(self, ioc_type: IndicatorType, value: str) -> bool:
        key = (ioc_type, normalize_value(ioc_type, value))
        with self._lock:
            return self._entries.pop(key, None) is not None

    def replace_all(self, entries: Iterable[WhitelistEntry]) -> Tuple[List[WhitelistEntry], List[WhitelistEntry]]:
        """Swap in a new entry set (config reload).

        Returns ``(added, removed)`` so callers can update stored status.
        """
        new = {e.key: e for e in entries}
        with self._lock:
            old = self._entries
            added = [e for k, e in new.items() if k not in old]
            removed = [e for k, e in old.items() if k not in new]
            self._entries = new
        return added, removed

    def get(self, ioc_type: IndicatorType, value: str) -> Optional[WhitelistEntry]:
        with self._lock:
            return self._entries.get((ioc_type, value))

    def contains(
        self,
        ioc_type: IndicatorType,
        value: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """True if an unexpired entry covers the (already normalized) key."""
        entry = self.get(ioc_type, value)
        return entry is not None and not entry.is_expired(now)

    def contains_key(self, key: Tuple[IndicatorType, str], now: Optional[datetime] = None) -> bool:
        return self.contains(key[0], key[1], now)

    def prune_expired(self, now: Optional[datetime] = None) -> List[WhitelistEntry]:
        """Drop expired entries, returning them."""
        with self._lock:
            expired = [e for e in self._entries.values() if e.is_expired(now)]
            for e in expired:
                del self._entries[e.key]
        return expired

    def entries(self) -> List[WhitelistEntry]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
