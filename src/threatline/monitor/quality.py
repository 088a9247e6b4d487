# Monitor Module - Feed Quality & Pipeline Metrics
#
# Thread-safe counters observed from every stage, plus named alerts:
#
#   feed_degraded               a feed failed max_attempts polls in a row
#   feed_quality_low            accepted/fetched ratio under threshold
#   store_unavailable           the warm tier halted merges
#   mitigation_failed           a response action exhausted its retries
#   detection_latency_exceeded  real-time detection overran its budget
#
# Alerts carry a running count per name and are pushed to registered
# listeners (the pipeline forwards them to the audit log).

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..intel.models import utcnow

logger = logging.getLogger(__name__)

FEED_DEGRADED = "feed_degraded"
FEED_QUALITY_LOW = "feed_quality_low"
STORE_UNAVAILABLE = "store_unavailable"
MITIGATION_FAILED = "mitigation_failed"
DETECTION_LATENCY_EXCEEDED = "detection_latency_exceeded"

ALERT_NAMES = (
    FEED_DEGRADED,
    FEED_QUALITY_LOW,
    STORE_UNAVAILABLE,
    MITIGATION_FAILED,
    DETECTION_LATENCY_EXCEEDED,
)

# Don't judge feed quality on tiny samples
MIN_QUALITY_SAMPLE = 20


@dataclass
class Alert:
    name: str
    message: str
    count: int
    raised_at: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "message": self.message,
            "count": self.count,
            "raised_at": self.raised_at,
            "details": self.details,
        }


@dataclass
class FeedCounters:
    polls: int = 0
    poll_failures: int = 0
    consecutive_failures: int = 0
    fetched: int = 0
    parsed: int = 0
    parse_errors: int = 0
    accepted: int = 0
    stored: int = 0
    rejected: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    degraded: bool = False
    last_error: Optional[str] = None
    last_poll: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polls": self.polls,
            "poll_failures": self.poll_failures,
            "consecutive_failures": self.consecutive_failures,
            "fetched": self.fetched,
            "parsed": self.parsed,
            "parse_errors": self.parse_errors,
            "accepted": self.accepted,
            "stored": self.stored,
            "rejected": dict(self.rejected),
            "degraded": self.degraded,
            "last_error": self.last_error,
            "last_poll": self.last_poll,
        }


class QualityMonitor:
    """Counters and named alerts for the whole pipeline.

    Args:
        quality_threshold: ``feed_quality`` below this raises
            ``feed_quality_low`` (once per poll that stays low).
        recent_alerts: How many alerts ``snapshot()`` keeps.
    """

    def __init__(self, quality_threshold: float = 0.5, recent_alerts: int = 50):
        self.quality_threshold = quality_threshold
        self._recent_limit = recent_alerts
        self._lock = threading.RLock()
        self._feeds: Dict[str, FeedCounters] = {}
        self._stages: Dict[str, int] = defaultdict(int)
        self._latency_max_ms = 0.0
        self._alert_counts: Dict[str, int] = defaultdict(int)
        self._recent: List[Alert] = []
        self._listeners: List[Callable[[Alert], None]] = []

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def on_alert(self, listener: Callable[[Alert], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def alert(self, name: str, message: str, **details: Any) -> Alert:
        with self._lock:
            self._alert_counts[name] += 1
            alert = Alert(
                name=name,
                message=message,
                count=self._alert_counts[name],
                raised_at=utcnow().isoformat(),
                details=details,
            )
            self._recent.append(alert)
            del self._recent[:-self._recent_limit]
            listeners = list(self._listeners)
        logger.warning("ALERT %s (#%d): %s", name, alert.count, message)
        for listener in listeners:
            try:
                listener(alert)
            except Exception as exc:
                logger.warning("Alert listener failed: %s", exc)
        return alert

    def alert_count(self, name: str) -> int:
        with self._lock:
            return self._alert_counts.get(name, 0)

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def _feed(self, name: str) -> FeedCounters:
        counters = self._feeds.get(name)
        if counters is None:
            counters = self._feeds[name] = FeedCounters()
        return counters

    def record_poll(self, feed: str, success: bool, error: Optional[str] = None) -> int:
        """Count a poll; returns the consecutive failure count."""
        with self._lock:
            c = self._feed(feed)
            c.polls += 1
            c.last_poll = utcnow().isoformat()
            if success:
                c.consecutive_failures = 0
                c.last_error = None
            else:
                c.poll_failures += 1
                c.consecutive_failures += 1
                c.last_error = error
            return c.consecutive_failures

    def record_ingest(
        self,
        feed: str,
        fetched: int = 0,
        parsed: int = 0,
        parse_errors: int = 0,
        accepted: int = 0,
        stored: int = 0,
        rejected: Optional[Dict[str, int]] = None,
    ) -> None:
        with self._lock:
            c = self._feed(feed)
            c.fetched += fetched
            c.parsed += parsed
            c.parse_errors += parse_errors
            c.accepted += accepted
            c.stored += stored
            for reason, n in (rejected or {}).items():
                c.rejected[reason] += n
        quality = self.feed_quality(feed)
        with self._lock:
            sample = self._feed(feed).fetched
        if sample >= MIN_QUALITY_SAMPLE and quality < self.quality_threshold:
            self.alert(
                FEED_QUALITY_LOW,
                f"Feed {feed} quality {quality:.2f} below {self.quality_threshold:.2f}",
                feed=feed,
                quality=round(quality, 4),
            )

    def mark_degraded(self, feed: str, failures: int, error: Optional[str] = None) -> bool:
        """Flag ``feed`` degraded; returns True on the transition only."""
        with self._lock:
            c = self._feed(feed)
            if c.degraded:
                return False
            c.degraded = True
        self.alert(
            FEED_DEGRADED,
            f"Feed {feed} degraded after {failures} consecutive failures",
            feed=feed,
            failures=failures,
            error=error,
        )
        return True

    def clear_degraded(self, feed: str) -> bool:
        with self._lock:
            c = self._feed(feed)
            was = c.degraded
            c.degraded = False
        if was:
            logger.info("Feed %s recovered", feed)
        return was

    def is_degraded(self, feed: str) -> bool:
        with self._lock:
            return self._feed(feed).degraded

    def feed_quality(self, feed: str) -> float:
        """accepted / fetched, weighted by the poll success rate."""
        with self._lock:
            c = self._feed(feed)
            if c.polls == 0:
                return 1.0
            success_rate = (c.polls - c.poll_failures) / c.polls
            if c.fetched == 0:
                return success_rate
            return (c.accepted / c.fetched) * success_rate

    def feed_counters(self, feed: str) -> Dict[str, Any]:
        with self._lock:
            return self._feed(feed).to_dict()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def incr(self, counter: str, n: int = 1) -> None:
        with self._lock:
            self._stages[counter] += n

    def counter(self, name: str) -> int:
        with self._lock:
            return self._stages.get(name, 0)

    def record_enrichment(self, partial: bool, timed_out: int = 0, failed: int = 0) -> None:
        with self._lock:
            if partial:
                self._stages["enrichment_partial"] += 1
            self._stages["enrichment_timeouts"] += timed_out
            self._stages["enrichment_failures"] += failed

    def record_store_retry(self) -> None:
        self.incr("store_write_retries")

    def store_unavailable(self, detail: str) -> None:
        self.incr("store_unavailable")
        self.alert(STORE_UNAVAILABLE, f"Warm tier unavailable: {detail}", detail=detail)

    def store_recovered(self) -> None:
        self.incr("store_recoveries")

    def record_detection(self, method: str, count: int = 1) -> None:
        with self._lock:
            self._stages[f"detections_{method}"] += count

    def record_latency(self, elapsed_ms: float, budget_ms: float) -> None:
        with self._lock:
            self._stages["realtime_events"] += 1
            self._latency_max_ms = max(self._latency_max_ms, elapsed_ms)
            over = elapsed_ms > budget_ms
            if over:
                self._stages["latency_overruns"] += 1
        if over:
            self.alert(
                DETECTION_LATENCY_EXCEEDED,
                f"Real-time detection took {elapsed_ms:.1f}ms (budget {budget_ms:.0f}ms)",
                elapsed_ms=round(elapsed_ms, 2),
                budget_ms=budget_ms,
            )

    def record_response(self, state: str) -> None:
        self.incr(f"response_{state}")

    def mitigation_failed(self, action: str, target: str, detail: str = "") -> None:
        self.incr("mitigation_failures")
        self.alert(
            MITIGATION_FAILED,
            f"Mitigation {action} on {target} failed after retries",
            action=action,
            target=target,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            feeds = {name: c.to_dict() for name, c in self._feeds.items()}
            stages = dict(self._stages)
            alerts = {name: self._alert_counts.get(name, 0) for name in ALERT_NAMES}
            for name, n in self._alert_counts.items():
                alerts.setdefault(name, n)
            recent = [a.to_dict() for a in self._recent]
            latency_max = self._latency_max_ms
        for name in feeds:
            feeds[name]["quality"] = round(self.feed_quality(name), 4)
        stages["latency_max_ms"] = round(latency_max, 2)
        return {
            "generated_at": utcnow().isoformat(),
            "feeds": feeds,
            "stages": stages,
            "alerts": alerts,
            "recent_alerts": recent,
        }
