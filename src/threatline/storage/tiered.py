# Storage Module - Tiered Indicator Store
#
# Coordinates the three tiers:
#
#   hot   in-memory LRU, the only tier real-time detection reads
#   warm  SQLite, authoritative and durable (write = durability point)
#   cold  gzip segments for archived / expired history
#
# Every read-modify-write of a key runs under that key's stripe lock, so
# the store never holds two live records for one (type, value).
#
# Failure semantics:
#   - hot read error   -> treated as a miss
#   - hot write error  -> queued in ``_pending`` and retried by flush_pending()
#   - hot remove error -> queued in ``_pending`` as a tombstone (None)
#   - pending key      -> its hot copy is stale; every read treats it as a miss
#   - warm error      -> StoreUnavailable; the store halts new merges until
#                         recover() succeeds

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..core.audit_log import AuditLogger, EventSeverity, EventType
from ..core.config import ConfidenceMode, StorageSettings
from ..core.errors import StoreUnavailable
from ..intel.lifecycle import merge
from ..intel.models import Indicator, IndicatorStatus, IndicatorType, utcnow
from .cold import ColdArchive
from .hot import HotTier, KeyLockTable
from .warm import WarmTier

if TYPE_CHECKING:
    from ..monitor.quality import QualityMonitor

logger = logging.getLogger(__name__)

Key = Tuple[IndicatorType, str]


@dataclass
class ArchiveReport:
    copied: int = 0
    removed: int = 0
    purged: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "copied": self.copied,
            "removed": self.removed,
            "purged": self.purged,
            "cancelled": self.cancelled,
        }


class TieredStore:
    """Hot/warm/cold indicator store.

    Args:
        hot: In-memory LRU tier.
        warm: SQLite tier.
        cold: Archive tier.
        retention_days: Warm retention for expired rows.
        monitor: Quality monitor (store retries / unavailability alerts).
        audit: Audit logger for store halt/recovery events.
        promotion_workers: Threads used for async warm -> hot promotion.
    """

    def __init__(
        self,
        hot: HotTier,
        warm: WarmTier,
        cold: ColdArchive,
        retention_days: int = 28,
        monitor: Optional["QualityMonitor"] = None,
        audit: Optional[AuditLogger] = None,
        promotion_workers: int = 2,
    ):
        self.hot = hot
        self.warm = warm
        self.cold = cold
        self.retention_days = retention_days
        self._monitor = monitor
        self._audit = audit
        self._locks = KeyLockTable()

        self._state_lock = threading.Lock()
        self._halted = False
        self._halt_reason: Optional[str] = None
        # key -> indicator to write, or None for a hot removal still owed
        self._pending: Dict[Key, Optional[Indicator]] = {}
        self._promoting: Set[Key] = set()
        self._promoter = ThreadPoolExecutor(
            max_workers=promotion_workers, thread_name_prefix="promote"
        )
        self._stats = {"upserts": 0, "merges": 0, "promotions": 0, "hot_write_failures": 0}

    @classmethod
    def from_settings(
        cls,
        settings: StorageSettings,
        monitor: Optional["QualityMonitor"] = None,
        audit: Optional[AuditLogger] = None,
    ) -> "TieredStore":
        return cls(
            HotTier(settings.hot_capacity),
            WarmTier(settings.warm_path),
            ColdArchive(settings.cold_dir),
            retention_days=settings.warm_retention_days,
            monitor=monitor,
            audit=audit,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @property
    def halted(self) -> bool:
        with self._state_lock:
            return self._halted

    def _halt(self, exc: Exception) -> StoreUnavailable:
        with self._state_lock:
            first = not self._halted
            self._halted = True
            self._halt_reason = str(exc)
        if first:
            logger.error("Warm tier unavailable, halting merges: %s", exc)
            if self._monitor is not None:
                self._monitor.store_unavailable(str(exc))
            if self._audit is not None:
                self._audit.log_event(
                    EventType.STORE_UNAVAILABLE,
                    EventSeverity.CRITICAL,
                    f"Warm tier unavailable: {exc}",
                    details={"tier": "warm"},
                )
        return StoreUnavailable(f"warm tier unavailable: {exc}", tier="warm")

    def _check_available(self) -> None:
        with self._state_lock:
            if self._halted:
                raise StoreUnavailable(
                    f"store halted: {self._halt_reason}", tier="warm"
                )

    def recover(self) -> bool:
        """Probe the warm tier and resume merges if it answers."""
        try:
            self.warm.ping()
        except sqlite3.Error as exc:
            logger.warning("Warm tier still unavailable: %s", exc)
            return False
        with self._state_lock:
            was_halted = self._halted
            self._halted = False
            self._halt_reason = None
        if was_halted:
            logger.info("Warm tier recovered, resuming merges")
            if self._monitor is not None:
                self._monitor.store_recovered()
            if self._audit is not None:
                self._audit.log_event(
                    EventType.STORE_RECOVERED,
                    EventSeverity.INFO,
                    "Warm tier recovered",
                    details={"tier": "warm"},
                )
        self.flush_pending()
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        indicator: Indicator,
        mode: ConfidenceMode = ConfidenceMode.MAX,
        whitelisted: Optional[bool] = None,
    ) -> Indicator:
        """Merge ``indicator`` into the stored record and persist it.

        ``whitelisted`` is the caller's current whitelist verdict for the
        key.  When given it decides between ``whitelisted`` and ``active``
        on the merged record, so a lapsed entry does not keep the stored
        status alive.  Returns the stored (merged) indicator.
        """
        self._check_available()
        key = indicator.key
        with self._locks.lock_for(key):
            current = self._read_current(key)
            stored = merge(current, indicator, mode) if current is not None else indicator.copy()
            if whitelisted:
                stored.status = IndicatorStatus.WHITELISTED
            elif whitelisted is not None and stored.status == IndicatorStatus.WHITELISTED:
                stored.status = IndicatorStatus.ACTIVE
            try:
                self.warm.upsert(stored)
            except sqlite3.Error as exc:
                raise self._halt(exc) from exc
            self._write_hot(stored)
        with self._state_lock:
            self._stats["upserts"] += 1
            if current is not None:
                self._stats["merges"] += 1
        return stored

    def update(
        self,
        key: Key,
        transition: Callable[[Optional[Indicator]], Optional[Indicator]],
    ) -> Optional[Indicator]:
        """Atomically apply ``transition`` to the stored record of ``key``.

        ``transition`` receives the current indicator (or None) and returns
        the replacement, or None to leave it unchanged.  An ``expired``
        replacement is kept in warm (for archival) and dropped from hot.
        """
        self._check_available()
        with self._locks.lock_for(key):
            current = self._read_current(key)
            updated = transition(current)
            if updated is None:
                return None
            try:
                self.warm.upsert(updated)
            except sqlite3.Error as exc:
                raise self._halt(exc) from exc
            if updated.status == IndicatorStatus.EXPIRED:
                self._remove_hot(key)
            else:
                self._write_hot(updated)
            return updated

    def remove(self, key: Key) -> bool:
        """Delete ``key`` from hot and warm (cold history is kept)."""
        self._check_available()
        with self._locks.lock_for(key):
            try:
                removed = self.warm.delete(key)
            except sqlite3.Error as exc:
                raise self._halt(exc) from exc
            self._remove_hot(key)
            return removed

    def _is_pending(self, key: Key) -> bool:
        with self._state_lock:
            return key in self._pending

    def _read_current(self, key: Key) -> Optional[Indicator]:
        cached = self._safe_hot_get(key)
        if cached is not None:
            return cached
        try:
            return self.warm.get(key)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc

    def _write_hot(self, indicator: Indicator) -> None:
        try:
            self.hot.put(indicator)
        except Exception as exc:
            logger.warning("Hot tier write failed for %s, queued: %s", indicator.value, exc)
            with self._state_lock:
                self._pending[indicator.key] = indicator
                self._stats["hot_write_failures"] += 1
            if self._monitor is not None:
                self._monitor.record_store_retry()
            return
        with self._state_lock:
            self._pending.pop(indicator.key, None)

    def _remove_hot(self, key: Key) -> None:
        try:
            self.hot.remove(key)
        except Exception as exc:
            logger.warning("Hot tier remove failed for %s, queued: %s", key[1], exc)
            with self._state_lock:
                self._pending[key] = None
                self._stats["hot_write_failures"] += 1
            if self._monitor is not None:
                self._monitor.record_store_retry()
            return
        with self._state_lock:
            self._pending.pop(key, None)

    def flush_pending(self) -> int:
        """Retry queued hot writes and removals.  Returns how many succeeded."""
        with self._state_lock:
            keys = list(self._pending)
        flushed = 0
        for key in keys:
            with self._locks.lock_for(key):
                with self._state_lock:
                    if key not in self._pending:
                        continue
                    indicator = self._pending[key]
                try:
                    if indicator is None:
                        self.hot.remove(key)
                    else:
                        self.hot.put(indicator)
                except Exception as exc:
                    logger.debug("Hot tier still failing for %s: %s", key[1], exc)
                    if self._monitor is not None:
                        self._monitor.record_store_retry()
                    continue
                with self._state_lock:
                    self._pending.pop(key, None)
                flushed += 1
        return flushed

    @property
    def pending_count(self) -> int:
        with self._state_lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _safe_hot_get(self, key: Key) -> Optional[Indicator]:
        if self._is_pending(key):
            return None
        try:
            return self.hot.get(key)
        except Exception as exc:
            logger.debug("Hot tier read failed for %s, treating as miss: %s", key[1], exc)
            return None

    def lookup_realtime(self, key: Key) -> Optional[Indicator]:
        """Hot-tier-only lookup; a miss schedules async warm promotion."""
        indicator = self._safe_hot_get(key)
        if indicator is None:
            self._schedule_promotion(key)
        return indicator

    def lookup(self, key: Key) -> Optional[Indicator]:
        """Hot, then warm; warm hits are promoted to hot."""
        indicator = self._safe_hot_get(key)
        if indicator is not None:
            return indicator
        self._check_available()
        try:
            indicator = self.warm.get(key)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc
        if indicator is not None and indicator.status != IndicatorStatus.EXPIRED:
            self._promote_now(key)
        return indicator

    def lookup_many(self, keys: Iterable[Key]) -> Dict[Key, Indicator]:
        """Bulk lookup for batch detection (hot first, then one warm query)."""
        found: Dict[Key, Indicator] = {}
        missing: List[Key] = []
        for key in set(keys):
            indicator = self._safe_hot_get(key)
            if indicator is not None:
                found[key] = indicator
            else:
                missing.append(key)
        if missing:
            self._check_available()
            try:
                found.update(self.warm.get_many(missing))
            except sqlite3.Error as exc:
                raise self._halt(exc) from exc
        return found

    def touch(self, key: Key) -> None:
        """Refresh LRU position after a match."""
        try:
            self.hot.touch(key)
        except Exception as exc:
            logger.debug("Hot tier touch failed for %s: %s", key[1], exc)

    def get(self, key: Key) -> Optional[Indicator]:
        """Authoritative (warm) read without promotion."""
        self._check_available()
        try:
            return self.warm.get(key)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def _schedule_promotion(self, key: Key) -> None:
        with self._state_lock:
            if self._halted or key in self._promoting:
                return
            self._promoting.add(key)
        try:
            self._promoter.submit(self._promote_job, key)
        except RuntimeError:
            # Executor shut down
            with self._state_lock:
                self._promoting.discard(key)

    def _promote_job(self, key: Key) -> None:
        try:
            self._promote_now(key)
        except Exception as exc:
            logger.debug("Promotion of %s failed: %s", key[1], exc)
        finally:
            with self._state_lock:
                self._promoting.discard(key)

    def _promote_now(self, key: Key) -> None:
        with self._locks.lock_for(key):
            stale = self._is_pending(key)
            if not stale and self._safe_hot_get(key) is not None:
                return
            try:
                indicator = self.warm.get(key)
            except sqlite3.Error as exc:
                raise self._halt(exc) from exc
            if indicator is None or indicator.status == IndicatorStatus.EXPIRED:
                if stale:
                    self._remove_hot(key)
                return
            self._write_hot(indicator)
        with self._state_lock:
            self._stats["promotions"] += 1

    def wait_for_promotions(self, timeout: float = 5.0) -> bool:
        """Block until queued promotions drain (tests, shutdown)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._state_lock:
                if not self._promoting:
                    return True
            time.sleep(0.01)
        return False

    # ------------------------------------------------------------------
    # Sweeps and archival
    # ------------------------------------------------------------------

    def iter_warm_chunks(
        self,
        chunk_size: int = 500,
        statuses: Optional[Sequence[IndicatorStatus]] = None,
    ) -> Iterator[List[Indicator]]:
        self._check_available()
        try:
            yield from self.warm.iter_chunks(chunk_size, statuses)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc

    def purge_expired(self) -> int:
        """Move expired warm rows to cold and delete them from hot and warm."""
        self._check_available()
        try:
            expired = self.warm.select_for_archive(before=None)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc
        if not expired:
            return 0
        self.cold.append(expired, reason="expired")
        removed = 0
        for ind in expired:
            with self._locks.lock_for(ind.key):
                try:
                    # A re-observation may have revived it meanwhile
                    if self.warm.delete_if_status(ind.key, IndicatorStatus.EXPIRED):
                        removed += 1
                except sqlite3.Error as exc:
                    raise self._halt(exc) from exc
                self._remove_hot(ind.key)
        if self._audit is not None:
            self._audit.log_event(
                EventType.INDICATOR_ARCHIVED,
                EventSeverity.INFO,
                f"Archived {removed} expired indicators to cold storage",
                details={"count": removed},
            )
        return removed

    def archive(
        self,
        before: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ArchiveReport:
        """Copy old rows to cold, remove expired ones, apply warm retention.

        Rows last seen before ``before`` (default: now minus retention) are
        copied to a cold segment but stay in warm while they are live.
        """
        report = ArchiveReport()
        self._check_available()
        cutoff = before or (utcnow() - timedelta(days=self.retention_days))
        try:
            candidates = self.warm.select_for_archive(cutoff)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc
        live_old = [i for i in candidates if i.status != IndicatorStatus.EXPIRED]
        if live_old:
            self.cold.append(live_old, reason="snapshot")
            report.copied = len(live_old)
        if cancel is not None and cancel.is_set():
            report.cancelled = True
            return report
        report.removed = self.purge_expired()
        report.copied += report.removed
        try:
            report.purged = self.warm.purge_retention(self.retention_days)
        except sqlite3.Error as exc:
            raise self._halt(exc) from exc
        logger.info(
            "Archive run: %d copied, %d expired removed, %d purged",
            report.copied, report.removed, report.purged,
        )
        return report

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._state_lock:
            out: Dict[str, Any] = dict(self._stats)
            out["halted"] = self._halted
            out["pending_hot_writes"] = len(self._pending)
        out["hot"] = self.hot.stats()
        try:
            out["warm"] = self.warm.stats()
        except sqlite3.Error as exc:
            out["warm"] = {"error": str(exc)}
        out["cold"] = self.cold.stats()
        return out

    def close(self) -> None:
        self._promoter.shutdown(wait=True, cancel_futures=True)
        self.warm.close()
