# Intel Module - Deduplication & Lifecycle
#
# Two responsibilities:
#   merge()           - combine a re-observed indicator with the stored one
#   LifecycleManager  - ingest through the whitelist, run the scheduled age
#                       sweep, and keep stored status in step with the
#                       whitelist
#
# The sweep never runs per event.  It walks the warm tier in chunks, applies
# each transition under the store's per-key lock and checks a cancellation
# Event between chunks, so a cancelled sweep leaves every key either fully
# transitioned or untouched.

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ..core.audit_log import AuditLogger, EventSeverity, EventType
from ..core.config import DEFAULT_THRESHOLDS_DAYS, ConfidenceMode, LifecycleSettings
from .models import Indicator, IndicatorStatus, IndicatorType, utcnow
from .whitelist import Whitelist, WhitelistEntry

if TYPE_CHECKING:
    from ..storage.tiered import TieredStore

logger = logging.getLogger(__name__)

# Liveness order used when combining statuses (higher wins)
_STATUS_RANK = {
    IndicatorStatus.EXPIRED: 0,
    IndicatorStatus.AGING: 1,
    IndicatorStatus.ACTIVE: 2,
    IndicatorStatus.WHITELISTED: 3,
}


def combine_confidence(a: float, b: float, mode: ConfidenceMode = ConfidenceMode.MAX) -> float:
    if mode == ConfidenceMode.ADDITIVE:
        # Noisy-or: bounded by 1.0, but not idempotent
        return min(1.0, 1.0 - (1.0 - a) * (1.0 - b))
    return max(a, b)


def merge(
    existing: Indicator,
    incoming: Indicator,
    mode: ConfidenceMode = ConfidenceMode.MAX,
) -> Indicator:
    """Merge two observations of the same key into a new Indicator.

    With the default MAX mode the result is idempotent, commutative and
    associative on confidence, sources and tags.  ``context`` is a union
    where ``incoming`` wins on conflicting keys.
    """
    if existing.key != incoming.key:
        raise ValueError(f"cannot merge {existing.key} with {incoming.key}")

    # Re-observation revives aging/expired; whitelisted always wins
    status = max(existing.status, incoming.status, key=_STATUS_RANK.__getitem__)

    context: Dict[str, Any] = dict(existing.context)
    context.update(incoming.context)

    return Indicator(
        type=existing.type,
        value=existing.value,
        confidence=combine_confidence(existing.confidence, incoming.confidence, mode),
        sources=existing.sources | incoming.sources,
        first_seen=min(existing.first_seen, incoming.first_seen),
        last_seen=max(existing.last_seen, incoming.last_seen),
        tags=existing.tags | incoming.tags,
        context=context,
        status=status,
    )


# ---------------------------------------------------------------------------
# Aging
# ---------------------------------------------------------------------------


class AgingPolicy:
    """Per-type aging thresholds plus the expiry grace and decay factor."""

    def __init__(
        self,
        thresholds_days: Mapping[str, int],
        expire_grace_days: int = 30,
        decay_factor: float = 0.8,
    ):
        days = dict(DEFAULT_THRESHOLDS_DAYS)
        days.update(thresholds_days)
        self.thresholds = {k: timedelta(days=v) for k, v in days.items()}
        self.expire_grace = timedelta(days=expire_grace_days)
        self.decay_factor = decay_factor

    @classmethod
    def from_settings(cls, settings: LifecycleSettings) -> "AgingPolicy":
        return cls(settings.thresholds_days, settings.expire_grace_days, settings.decay_factor)

    def threshold_for(self, ioc_type: IndicatorType) -> timedelta:
        return self.thresholds[ioc_type.aging_class]

    def apply(self, indicator: Indicator, now: datetime) -> Optional[Indicator]:
        """Return the transitioned copy, or None when nothing changes."""
        if indicator.status not in (IndicatorStatus.ACTIVE, IndicatorStatus.AGING):
            return None

        age = now - indicator.last_seen
        threshold = self.threshold_for(indicator.type)
        if age <= threshold:
            return None

        updated = indicator.copy()
        if indicator.status == IndicatorStatus.ACTIVE:
            # Decay once, on the transition into aging
            updated.confidence = indicator.confidence * self.decay_factor
            updated.status = IndicatorStatus.AGING
        if age > threshold + self.expire_grace:
            updated.status = IndicatorStatus.EXPIRED
        if updated.status == indicator.status:
            return None
        return updated


@dataclass
class SweepReport:
    started: datetime
    finished: Optional[datetime] = None
    examined: int = 0
    aged: int = 0
    expired: int = 0
    archived: int = 0
    restored: int = 0
    chunks: int = 0
    cancelled: bool = False
    expired_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "examined": self.examined,
            "aged": self.aged,
            "expired": self.expired,
            "archived": self.archived,
            "restored": self.restored,
            "chunks": self.chunks,
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Lifecycle Manager
# ---------------------------------------------------------------------------


class LifecycleManager:
    """Owns merge mode, aging and whitelist status for the store.

    Args:
        store: The TieredStore holding live indicators.
        whitelist: Operator whitelist (shared with detection/response).
        settings: Lifecycle tuning (thresholds, grace, decay, chunking).
        audit: Audit logger for expiry and whitelist changes.
    """

    def __init__(
        self,
        store: "TieredStore",
        whitelist: Whitelist,
        settings: Optional[LifecycleSettings] = None,
        audit: Optional[AuditLogger] = None,
    ):
        settings = settings or LifecycleSettings()
        self._store = store
        self._whitelist = whitelist
        self._audit = audit
        self._sweep_lock = threading.Lock()
        self.configure(settings)
        self._last_sweep: Optional[SweepReport] = None

    def configure(self, settings: LifecycleSettings) -> None:
        """Apply (re)loaded lifecycle settings."""
        self.policy = AgingPolicy.from_settings(settings)
        self.mode = settings.confidence_mode
        self.chunk_size = settings.sweep_chunk_size

    @property
    def whitelist(self) -> Whitelist:
        return self._whitelist

    @property
    def last_sweep(self) -> Optional[SweepReport]:
        return self._last_sweep

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, indicator: Indicator, now: Optional[datetime] = None) -> Indicator:
        """Merge one validated observation into the store.

        The whitelist is checked at merge time: a record stored as
        whitelisted whose entry has since lapsed comes back ``active``.
        """
        whitelisted = self._whitelist.contains_key(indicator.key, now)
        if whitelisted:
            indicator.status = IndicatorStatus.WHITELISTED
        return self._store.upsert(indicator, mode=self.mode, whitelisted=whitelisted)

    # ------------------------------------------------------------------
    # Age sweep
    # ------------------------------------------------------------------

    def age_sweep(
        self,
        now: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SweepReport:
        """Age, expire and archive indicators whose last_seen is old.

        Also restores ``active`` on indicators whose whitelist entry has
        lapsed.  Safe to call concurrently with ingestion; a second sweep
        started while one is running waits for it.
        """
        now = now or utcnow()
        report = SweepReport(started=utcnow())
        statuses = (IndicatorStatus.ACTIVE, IndicatorStatus.AGING, IndicatorStatus.WHITELISTED)

        with self._sweep_lock:
            for chunk in self._store.iter_warm_chunks(self.chunk_size, statuses=statuses):
                for candidate in chunk:
                    report.examined += 1
                    self._sweep_one(candidate, now, report)
                report.chunks += 1
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    logger.info("Age sweep cancelled after %d chunks", report.chunks)
                    break

            if report.expired:
                report.archived = self._store.purge_expired()

        report.finished = utcnow()
        self._last_sweep = report

        if report.expired and self._audit is not None:
            self._audit.log_event(
                EventType.INDICATOR_EXPIRED,
                EventSeverity.INFO,
                f"Age sweep expired {report.expired} indicators",
                details=report.to_dict(),
            )
        logger.info(
            "Age sweep: %d examined, %d aged, %d expired, %d archived, %d restored",
            report.examined, report.aged, report.expired, report.archived, report.restored,
        )
        return report

    def _sweep_one(self, candidate: Indicator, now: datetime, report: SweepReport) -> None:
        whitelisted = self._whitelist.contains_key(candidate.key, now)

        def transition(current: Optional[Indicator]) -> Optional[Indicator]:
            if current is None:
                return None
            if current.status == IndicatorStatus.WHITELISTED:
                if whitelisted:
                    return None
                restored = current.copy()
                restored.status = IndicatorStatus.ACTIVE
                return restored
            if whitelisted:
                marked = current.copy()
                marked.status = IndicatorStatus.WHITELISTED
                return marked
            return self.policy.apply(current, now)

        before = candidate.status
        updated = self._store.update(candidate.key, transition)
        if updated is None:
            return
        if before == IndicatorStatus.WHITELISTED and updated.status == IndicatorStatus.ACTIVE:
            report.restored += 1
            # The lapsed entry may still need aging in this same sweep
            aged = self._store.update(candidate.key, lambda cur: self.policy.apply(cur, now) if cur else None)
            if aged is None:
                return
            updated = aged
            before = IndicatorStatus.ACTIVE
        if before == IndicatorStatus.ACTIVE and updated.status in (IndicatorStatus.AGING, IndicatorStatus.EXPIRED):
            report.aged += 1
        if updated.status == IndicatorStatus.EXPIRED:
            report.expired += 1
            report.expired_keys.append(f"{updated.type.value}:{updated.value}")

    # ------------------------------------------------------------------
    # Whitelist maintenance
    # ------------------------------------------------------------------

    def add_whitelist(self, entry: WhitelistEntry) -> None:
        self._whitelist.add(entry)
        self._mark(entry, whitelisted=True)
        if self._audit is not None:
            self._audit.log_event(
                EventType.WHITELIST_ADDED,
                EventSeverity.INFO,
                f"Whitelisted {entry.type.value} {entry.value}",
                details={"type": entry.type.value, "value": entry.value, "reason": entry.reason},
            )

    def remove_whitelist(self, ioc_type: IndicatorType, value: str) -> bool:
        entry = WhitelistEntry.create(ioc_type, value)
        removed = self._whitelist.remove(entry.type, entry.value)
        if removed:
            self._mark(entry, whitelisted=False)
            if self._audit is not None:
                self._audit.log_event(
                    EventType.WHITELIST_REMOVED,
                    EventSeverity.INFO,
                    f"Removed whitelist entry {entry.type.value} {entry.value}",
                    details={"type": entry.type.value, "value": entry.value},
                )
        return removed

    def sync_whitelist(self, entries: List[WhitelistEntry]) -> None:
        """Replace the whole whitelist (config reload) and fix stored status."""
        added, removed = self._whitelist.replace_all(entries)
        for entry in added:
            self._mark(entry, whitelisted=True)
        for entry in removed:
            self._mark(entry, whitelisted=False)
        if added or removed:
            logger.info("Whitelist reloaded: %d added, %d removed", len(added), len(removed))

    def apply_whitelist(self) -> None:
        """Mark every stored indicator covered by the whitelist."""
        for entry in self._whitelist.entries():
            self._mark(entry, whitelisted=True)

    def _mark(self, entry: WhitelistEntry, whitelisted: bool) -> None:
        def transition(current: Optional[Indicator]) -> Optional[Indicator]:
            if current is None:
                return None
            if whitelisted and current.status != IndicatorStatus.WHITELISTED:
                updated = current.copy()
                updated.status = IndicatorStatus.WHITELISTED
                return updated
            if not whitelisted and current.status == IndicatorStatus.WHITELISTED:
                updated = current.copy()
                updated.status = IndicatorStatus.ACTIVE
                return updated
            return None

        self._store.update(entry.key, transition)
