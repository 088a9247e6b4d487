# Detection Module - Detection Engine
#
# Two paths over the same eligibility rule:
#
#   process_event()  real-time: extract -> hot-tier point lookups -> hand
#                    off.  Never touches the warm tier synchronously; misses
#                    schedule async promotion.  SIEM delivery and listeners
#                    run on background workers, so a slow sink or a
#                    retrying responder never holds up the caller.  The
#                    whole call is checked against the latency budget
#                    (overruns are counted, never block).
#   scan()           batch: a bounded window of events, candidates
#                    deduplicated across the window, one bulk store
#                    lookup per chunk, one Detection per matched value.
#                    Cancellation is checked after each chunk.  Delivery
#                    is inline, so scan() returns after the SIEM push.
#
# An indicator is eligible when its status is ACTIVE, it is not covered by
# the whitelist and its confidence reaches ``min_confidence``.

import csv
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from ..core.config import DetectionSettings
from ..intel.models import (
    Detection,
    DetectionMethod,
    Indicator,
    IndicatorStatus,
    IndicatorType,
    parse_timestamp,
    utcnow,
)
from ..intel.whitelist import Whitelist
from .extractor import CandidateExtractor
from .siem import SiemDeliveryError, SiemSink

if TYPE_CHECKING:
    from ..monitor.quality import QualityMonitor
    from ..storage.tiered import TieredStore

logger = logging.getLogger(__name__)

Key = Tuple[IndicatorType, str]

# Base weight per type: how strongly a match implies compromise
TYPE_WEIGHTS: Dict[IndicatorType, float] = {
    IndicatorType.MD5: 1.0,
    IndicatorType.SHA1: 1.0,
    IndicatorType.SHA256: 1.0,
    IndicatorType.URL: 0.95,
    IndicatorType.IP: 0.9,
    IndicatorType.REGISTRY_KEY: 0.9,
    IndicatorType.DOMAIN: 0.85,
    IndicatorType.COMMAND_PATTERN: 0.8,
    IndicatorType.BEHAVIORAL_PATTERN: 0.75,
    IndicatorType.PROCESS_NAME: 0.7,
}

CRITICAL_TAGS = frozenset({"apt", "ransomware", "c2", "critical", "wiper", "exploit"})
CRITICAL_TAG_BOOST = 0.10
REPUTATION_BOOST_MAX = 0.15
CORROBORATION_BOOST = 0.05
CORROBORATION_SOURCES = 3


def compute_severity(indicator: Indicator) -> float:
    """``type weight x confidence`` plus context boosts, clamped to [0, 1]."""
    score = TYPE_WEIGHTS.get(indicator.type, 0.7) * indicator.confidence

    tags = {t.lower() for t in indicator.tags}
    if tags & CRITICAL_TAGS or any(t.split(":", 1)[-1] in CRITICAL_TAGS for t in tags):
        score += CRITICAL_TAG_BOOST

    reputation = indicator.context.get("reputation") or {}
    malicious = reputation.get("malicious") or 0
    if malicious > 0:
        score += REPUTATION_BOOST_MAX * min(malicious, 10) / 10.0

    if len(indicator.sources) >= CORROBORATION_SOURCES:
        score += CORROBORATION_BOOST

    return max(0.0, min(1.0, score))


@dataclass
class ScanReport:
    """Outcome of one batch scan."""

    started: datetime = field(default_factory=utcnow)
    finished: Optional[datetime] = None
    events: int = 0
    candidates: int = 0
    chunks: int = 0
    detections: List[Detection] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started.isoformat(),
            "finished": self.finished.isoformat() if self.finished else None,
            "events": self.events,
            "candidates": self.candidates,
            "chunks": self.chunks,
            "detections": len(self.detections),
            "cancelled": self.cancelled,
        }


class DetectionEngine:
    """Match telemetry against the store.

    Args:
        store: TieredStore to look indicators up in.
        whitelist: Values that must never produce a Detection.
        settings: Thresholds, latency budget and batch chunking.
        extractor: Candidate extractor (default settings if omitted).
        monitor: Quality monitor for latency and detection counters.
        sink: Outbound SIEM sink; detections are pushed after matching.

    Real-time detections are delivered by two single-thread workers (one
    for the SIEM sink, one for listeners), so each sees detections in
    match order and neither waits on the other.
    """

    def __init__(
        self,
        store: "TieredStore",
        whitelist: Whitelist,
        settings: Optional[DetectionSettings] = None,
        extractor: Optional[CandidateExtractor] = None,
        monitor: Optional["QualityMonitor"] = None,
        sink: Optional[SiemSink] = None,
    ):
        self._store = store
        self._whitelist = whitelist
        self._extractor = extractor or CandidateExtractor()
        self._monitor = monitor
        self._sink = sink
        self._listeners: List[Callable[[Detection], None]] = []
        self._lock = threading.Lock()
        self._stats = {"events": 0, "realtime_detections": 0, "batch_detections": 0, "siem_failures": 0}
        self._in_flight = 0
        self._sink_worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="siem-push")
        self._listener_worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="detection-listeners")
        self.configure(settings or DetectionSettings())

    def configure(self, settings: DetectionSettings) -> None:
        self.min_confidence = settings.min_confidence
        self.latency_budget_ms = settings.latency_budget_ms
        self.chunk_size = settings.batch_chunk_size

    def on_detection(self, listener: Callable[[Detection], None]) -> None:
        """Register a consumer (e.g. the response orchestrator)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Detection], None]) -> bool:
        if listener in self._listeners:
            self._listeners.remove(listener)
            return True
        return False

    def is_eligible(self, indicator: Optional[Indicator], now: Optional[datetime] = None) -> bool:
        if indicator is None:
            return False
        if indicator.status != IndicatorStatus.ACTIVE:
            return False
        if self._whitelist.contains_key(indicator.key, now):
            return False
        return indicator.confidence >= self.min_confidence

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    def process_event(self, event: Mapping[str, Any]) -> List[Detection]:
        """Match one event against the hot tier."""
        started = time.perf_counter()
        detections: List[Detection] = []
        now = utcnow()
        for cand in self._extractor.extract(event):
            indicator = self._store.lookup_realtime(cand.key)
            if not self.is_eligible(indicator, now):
                continue
            self._store.touch(cand.key)
            detections.append(Detection(
                indicator=indicator,
                event=event,
                matched_value=cand.value,
                severity=compute_severity(indicator),
                method=DetectionMethod.REALTIME,
            ))

        with self._lock:
            self._stats["events"] += 1
            self._stats["realtime_detections"] += len(detections)
        if detections:
            self._announce(detections, DetectionMethod.REALTIME)
            self._submit(self._sink_worker, self._push_to_sink, detections)
            self._submit(self._listener_worker, self._notify_listeners, detections)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if self._monitor is not None:
            self._monitor.record_latency(elapsed_ms, self.latency_budget_ms)
        return detections

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def scan(
        self,
        events: Iterable[Mapping[str, Any]],
        cancel: Optional[threading.Event] = None,
    ) -> ScanReport:
        """Retrospective scan of a bounded window of events."""
        report = ScanReport()
        emitted: Set[Key] = set()
        checked: Set[Key] = set()
        now = utcnow()

        for chunk in _chunks(events, self.chunk_size):
            report.events += len(chunk)
            index = self._extractor.extract_many(chunk)
            fresh = [k for k in index if k not in checked]
            checked.update(fresh)
            report.candidates += len(fresh)

            found = self._store.lookup_many(fresh) if fresh else {}
            chunk_detections: List[Detection] = []
            for key in fresh:
                indicator = found.get(key)
                if key in emitted or not self.is_eligible(indicator, now):
                    continue
                emitted.add(key)
                first_event = chunk[index[key][0]]
                chunk_detections.append(Detection(
                    indicator=indicator,
                    event=first_event,
                    matched_value=key[1],
                    severity=compute_severity(indicator),
                    method=DetectionMethod.BATCH,
                ))
            report.chunks += 1
            if chunk_detections:
                report.detections.extend(chunk_detections)
                self._emit(chunk_detections, DetectionMethod.BATCH)
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                logger.info("Batch scan cancelled after %d chunks", report.chunks)
                break

        report.finished = utcnow()
        with self._lock:
            self._stats["batch_detections"] += len(report.detections)
        logger.info(
            "Batch scan: %d events, %d candidates, %d detections",
            report.events, report.candidates, len(report.detections),
        )
        return report

    def scan_file(
        self,
        path: Union[str, Path],
        cancel: Optional[threading.Event] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> ScanReport:
        """Scan a JSON-lines or CSV telemetry file (optionally time-bounded)."""
        events = read_telemetry(path)
        if since is not None or until is not None:
            events = _window(events, since, until)
        return self.scan(events, cancel=cancel)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit(self, detections: List[Detection], method: DetectionMethod) -> None:
        self._announce(detections, method)
        self._push_to_sink(detections)
        self._notify_listeners(detections)

    def _announce(self, detections: List[Detection], method: DetectionMethod) -> None:
        if self._monitor is not None:
            self._monitor.record_detection(method.value, len(detections))
        for d in detections:
            logger.info(
                "Detection %s: %s %s severity=%.2f (%s)",
                d.detection_id[:8], d.indicator.type.value, d.matched_value,
                d.severity, method.value,
            )

    def _push_to_sink(self, detections: List[Detection]) -> None:
        if self._sink is None:
            return
        try:
            self._sink.push_detections(detections)
        except SiemDeliveryError as exc:
            with self._lock:
                self._stats["siem_failures"] += 1
            logger.error("Detections not delivered to SIEM: %s", exc)

    def _notify_listeners(self, detections: List[Detection]) -> None:
        for listener in list(self._listeners):
            for d in detections:
                try:
                    listener(d)
                except Exception as exc:
                    logger.error("Detection listener failed for %s: %s", d.detection_id, exc)

    def _submit(
        self,
        worker: ThreadPoolExecutor,
        job: Callable[[List[Detection]], None],
        detections: List[Detection],
    ) -> None:
        with self._lock:
            self._in_flight += 1
        try:
            worker.submit(self._run_job, job, detections)
        except RuntimeError:
            # Engine closed
            with self._lock:
                self._in_flight -= 1
            logger.warning("Detection engine closed, %d detections not delivered", len(detections))

    def _run_job(self, job: Callable[[List[Detection]], None], detections: List[Detection]) -> None:
        try:
            job(detections)
        except Exception as exc:
            logger.error("Detection delivery failed: %s", exc)
        finally:
            with self._lock:
                self._in_flight -= 1

    def wait_for_dispatch(self, timeout: float = 5.0) -> bool:
        """Block until queued real-time deliveries drain (tests, shutdown)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._in_flight:
                    return True
            time.sleep(0.01)
        return False

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = dict(self._stats)
            out["pending_deliveries"] = self._in_flight
        return out

    def close(self) -> None:
        """Deliver what is queued, then stop the workers."""
        self._sink_worker.shutdown(wait=True)
        self._listener_worker.shutdown(wait=True)


# ---------------------------------------------------------------------------
# Telemetry helpers
# ---------------------------------------------------------------------------


def read_telemetry(path: Union[str, Path]) -> Iterator[Dict[str, Any]]:
    """Stream events from a ``.csv`` or JSON-lines file."""
    p = Path(path)
    with open(p, "r", encoding="utf-8", newline="") as f:
        if p.suffix.lower() == ".csv":
            for row in csv.DictReader(f):
                yield {k: v for k, v in row.items() if k is not None and v not in (None, "")}
            return
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed telemetry line %d in %s", lineno, p.name)
                continue
            if isinstance(event, dict):
                yield event


def _window(
    events: Iterable[Dict[str, Any]],
    since: Optional[datetime],
    until: Optional[datetime],
) -> Iterator[Dict[str, Any]]:
    for event in events:
        ts = parse_timestamp(event.get("timestamp"))
        if ts is None:
            continue
        if since is not None and ts < since:
            continue
        if until is not None and ts >= until:
            continue
        yield event


def _chunks(events: Iterable[Mapping[str, Any]], size: int) -> Iterator[List[Mapping[str, Any]]]:
    chunk: List[Mapping[str, Any]] = []
    for event in events:
        chunk.append(event)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
