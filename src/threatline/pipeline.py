# Pipeline - Coordinator
#
# Wires every stage together and owns their schedules:
#
#   feeds (one APScheduler interval job each)
#     -> parse -> validate -> enrich -> lifecycle.ingest (merge into store)
#   age sweep / archival / scheduled batch scan (own jobs, cancellable)
#   live events -> detection.process_event -> response orchestrator
#
# A failing feed never blocks another.  Failed polls back off with the
# feed_retry policy; ``max_attempts`` consecutive failures flag the feed
# degraded until its next success.  While the warm tier is unavailable
# polls are skipped (not counted against the feed) and recovery is probed
# on a timer.

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .core.audit_log import AuditLogger, EventSeverity, EventType
from .core.config import ConfigWatcher, FeedSource, PipelineConfig
from .core.errors import ConfigError, FetchError, StoreUnavailable
from .detection.engine import DetectionEngine, ScanReport
from .detection.siem import HttpSiemSink, SiemSink
from .enrichment.engine import EnrichmentEngine
from .intel.adapter import FeedAdapter
from .intel.lifecycle import LifecycleManager, SweepReport
from .intel.models import Detection, Indicator, IndicatorType, utcnow
from .intel.registry import build_adapter
from .intel.validator import IndicatorValidator
from .intel.whitelist import Whitelist, WhitelistEntry
from .monitor.quality import Alert, QualityMonitor
from .response.executor import ActionExecutor, HttpActionExecutor, InMemoryActionExecutor
from .response.orchestrator import ResponseOrchestrator
from .storage.tiered import ArchiveReport, TieredStore

logger = logging.getLogger(__name__)

# Accepted indicators are enriched concurrently in batches of this size
ENRICH_BATCH = 64
STORE_RECOVERY_INTERVAL_SEC = 60


class FetchResult:
    """Outcome of a single feed poll."""

    def __init__(self, feed: str):
        self.feed = feed
        self.fetched = 0
        self.parsed = 0
        self.parse_errors = 0
        self.accepted = 0
        self.rejected: Dict[str, int] = {}
        self.stored = 0
        self.error: Optional[str] = None
        self.store_unavailable = False
        self.duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed": self.feed,
            "success": self.success,
            "fetched": self.fetched,
            "parsed": self.parsed,
            "parse_errors": self.parse_errors,
            "accepted": self.accepted,
            "rejected": dict(self.rejected),
            "stored": self.stored,
            "error": self.error,
            "store_unavailable": self.store_unavailable,
            "duration_ms": round(self.duration_ms, 1),
        }


class PollReport:
    """Summary of one poll over every enabled feed."""

    def __init__(self):
        self.started = utcnow().isoformat()
        self.finished: Optional[str] = None
        self.results: List[FetchResult] = []

    @property
    def feeds_succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def feeds_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total_stored(self) -> int:
        return sum(r.stored for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "finished": self.finished,
            "feeds_succeeded": self.feeds_succeeded,
            "feeds_failed": self.feeds_failed,
            "total_fetched": sum(r.fetched for r in self.results),
            "total_stored": self.total_stored,
            "results": [r.to_dict() for r in self.results],
        }


class Pipeline:
    """The whole IOC pipeline built from one ``PipelineConfig``.

    Usage::

        pipeline = Pipeline(load_config("threatline.yaml"))
        pipeline.start()             # scheduled polls, sweeps, archival
        pipeline.process_event(ev)   # real-time detection + response
        pipeline.stop()

    Collaborators can be injected (tests, embedding); anything omitted is
    built from the configuration.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        config_path: Optional[Union[str, Path]] = None,
        store: Optional[TieredStore] = None,
        monitor: Optional[QualityMonitor] = None,
        audit: Optional[AuditLogger] = None,
        enrichment: Optional[EnrichmentEngine] = None,
        executor: Optional[ActionExecutor] = None,
        sink: Optional[SiemSink] = None,
        max_workers: int = 4,
    ):
        self._config = config
        self._config_path = Path(config_path) if config_path else None
        self._max_workers = max_workers
        self._lock = threading.RLock()
        self._cancel = threading.Event()

        self.monitor = monitor or QualityMonitor()
        self.audit = audit or AuditLogger(Path(config.audit_log_dir))
        self.monitor.on_alert(self._forward_alert)

        self.store = store or TieredStore.from_settings(config.storage, self.monitor, self.audit)
        self.whitelist = Whitelist.from_config(config.whitelist)
        self.validator = IndicatorValidator(
            allow_documentation_ranges=config.validation.allow_documentation_ranges,
            max_pattern_length=config.validation.max_pattern_length,
        )
        self.lifecycle = LifecycleManager(self.store, self.whitelist, config.lifecycle, self.audit)
        self.enrichment = enrichment or EnrichmentEngine.from_settings(config.enrichment, self.monitor)

        if sink is None and config.detection.siem_url:
            sink = HttpSiemSink(
                config.detection.siem_url,
                credentials_ref=config.detection.siem_credentials_ref,
            )
        self.detection = DetectionEngine(
            self.store, self.whitelist, config.detection, monitor=self.monitor, sink=sink,
        )

        if executor is None:
            if config.response.executor_url:
                executor = HttpActionExecutor(
                    config.response.executor_url,
                    credentials_ref=config.response.executor_credentials_ref,
                    timeout=config.response.action_timeout_seconds,
                )
            else:
                logger.warning("No response executor configured, mitigations are dry-run only")
                executor = InMemoryActionExecutor()
        self.response = ResponseOrchestrator(
            executor, self.whitelist, config.response, monitor=self.monitor, audit=self.audit,
        )
        self.detection.on_detection(self.response.handle)

        self._adapters: Dict[str, FeedAdapter] = {}
        for source in config.feeds:
            if source.enabled:
                self._adapters[source.name] = build_adapter(source)
        self._feed_policy = config.feed_retry.retry_policy()

        self._enrich_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self._scheduler: Optional[BackgroundScheduler] = None
        self._watcher: Optional[ConfigWatcher] = None
        self._last_poll: Optional[PollReport] = None
        self._last_archive: Optional[ArchiveReport] = None
        self._last_scan: Optional[ScanReport] = None

        self.lifecycle.apply_whitelist()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def feed_names(self) -> List[str]:
        with self._lock:
            return list(self._adapters)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def poll_feed(self, name: str) -> FetchResult:
        """Run one poll of feed ``name`` through the whole ingest path."""
        with self._lock:
            adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigError(f"Unknown or disabled feed: {name}")

        result = FetchResult(name)
        started = utcnow()

        if self.store.halted and not self.store.recover():
            result.error = "store unavailable"
            result.store_unavailable = True
            logger.warning("Skipping poll of %s: store unavailable", name)
            return result

        try:
            batch: List[Indicator] = []
            for raw in adapter.fetch():
                result.fetched += 1
                outcome = adapter.parse(raw)
                if not outcome.ok:
                    result.parse_errors += 1
                    logger.debug("Feed %s parse error: %s", name, outcome.error)
                    continue
                result.parsed += 1
                verdict = self.validator.check(outcome.indicator)
                if not verdict.accepted:
                    result.rejected[verdict.reason] = result.rejected.get(verdict.reason, 0) + 1
                    continue
                result.accepted += 1
                batch.append(outcome.indicator)
                if len(batch) >= ENRICH_BATCH:
                    result.stored += self._enrich_and_ingest(batch)
                    batch = []
            if batch:
                result.stored += self._enrich_and_ingest(batch)
        except FetchError as exc:
            result.error = str(exc)
            logger.warning("Feed %s fetch failed: %s", name, exc)
        except StoreUnavailable as exc:
            result.error = str(exc)
            result.store_unavailable = True
            logger.error("Feed %s ingest halted: %s", name, exc)
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            logger.error("Feed %s poll crashed: %s", name, exc, exc_info=True)

        result.duration_ms = (utcnow() - started).total_seconds() * 1000
        self._after_poll(adapter.source, result)
        return result

    def _enrich_and_ingest(self, batch: List[Indicator]) -> int:
        enriched = list(self._enrich_pool.map(self.enrichment.enrich_indicator, batch))
        for indicator in enriched:
            self.lifecycle.ingest(indicator)
        return len(enriched)

    def _after_poll(self, source: FeedSource, result: FetchResult) -> None:
        name = source.name
        self.monitor.record_ingest(
            name,
            fetched=result.fetched,
            parsed=result.parsed,
            parse_errors=result.parse_errors,
            accepted=result.accepted,
            stored=result.stored,
            rejected=result.rejected,
        )
        if result.store_unavailable:
            # Not the feed's fault
            return

        failures = self.monitor.record_poll(name, result.success, result.error)
        if result.success:
            self.audit.log_event(
                EventType.FEED_POLLED,
                EventSeverity.INFO,
                f"Feed {name} polled: {result.stored} stored",
                details=result.to_dict(),
            )
            if self.monitor.clear_degraded(name):
                self.audit.log_event(
                    EventType.FEED_RECOVERED,
                    EventSeverity.INFO,
                    f"Feed {name} recovered",
                    details={"feed": name},
                )
            self._reschedule(source, timedelta(seconds=source.poll_interval_seconds))
            return

        self.audit.log_event(
            EventType.FEED_FAILED,
            EventSeverity.INVESTIGATE,
            f"Feed {name} poll failed: {result.error}",
            details=result.to_dict(),
        )
        if failures >= self._feed_policy.max_attempts:
            if self.monitor.mark_degraded(name, failures, result.error):
                self.audit.log_event(
                    EventType.FEED_DEGRADED,
                    EventSeverity.ALERT,
                    f"Feed {name} degraded after {failures} consecutive failures",
                    details={"feed": name, "failures": failures, "error": result.error},
                )
        delay = min(self._feed_policy.delay_for(failures), float(source.poll_interval_seconds))
        self._reschedule(source, timedelta(seconds=delay))

    def poll_all(self) -> PollReport:
        """Poll every enabled feed in parallel; one failure never blocks another."""
        report = PollReport()
        names = self.feed_names
        if names:
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                futures = {pool.submit(self.poll_feed, n): n for n in names}
                for future in as_completed(futures):
                    report.results.append(future.result())
        report.finished = utcnow().isoformat()
        self._last_poll = report
        logger.info(
            "Poll complete: %d stored, %d/%d feeds ok",
            report.total_stored, report.feeds_succeeded, len(report.results),
        )
        return report

    def ingest(self, indicator: Indicator) -> Optional[Indicator]:
        """Validate, enrich and store one indicator outside any feed."""
        verdict = self.validator.check(indicator)
        if not verdict.accepted:
            logger.info("Rejected %s %s: %s", indicator.type.value, indicator.value, verdict.reason)
            return None
        return self.lifecycle.ingest(self.enrichment.enrich_indicator(indicator))

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def process_event(self, event: Mapping[str, Any]) -> List[Detection]:
        return self.detection.process_event(event)

    def scan(self, path: Optional[Union[str, Path]] = None) -> ScanReport:
        """Batch-scan a telemetry file (default: the configured batch source)."""
        source = path or self._config.detection.batch_source
        if not source:
            raise ConfigError("No telemetry file given and detection.batch_source is unset")
        report = self.detection.scan_file(source, cancel=self._cancel)
        self._last_scan = report
        return report

    # ------------------------------------------------------------------
    # Lifecycle jobs
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.lifecycle.age_sweep(now=now, cancel=self._cancel)

    def archive(self) -> ArchiveReport:
        report = self.store.archive(cancel=self._cancel)
        self._last_archive = report
        return report

    def add_whitelist(
        self,
        ioc_type: Union[str, IndicatorType],
        value: str,
        reason: str = "",
        expires_at: Optional[datetime] = None,
    ) -> WhitelistEntry:
        entry = WhitelistEntry.create(ioc_type, value, reason, expires_at)
        self.lifecycle.add_whitelist(entry)
        return entry

    def remove_whitelist(self, ioc_type: Union[str, IndicatorType], value: str) -> bool:
        t = ioc_type if isinstance(ioc_type, IndicatorType) else IndicatorType.parse(ioc_type)
        return self.lifecycle.remove_whitelist(t, value)

    def _check_store(self) -> None:
        if self.store.halted:
            self.store.recover()
        else:
            self.store.flush_pending()

    # ------------------------------------------------------------------
    # Configuration reload
    # ------------------------------------------------------------------

    def reload_config(self, config: PipelineConfig) -> None:
        """Apply a new configuration without restarting."""
        with self._lock:
            old = self._config
            self._config = config

            self.lifecycle.sync_whitelist([
                WhitelistEntry.create(c.type, c.value, c.reason, c.expires_at)
                for c in config.whitelist
            ])
            self.validator.allow_documentation_ranges = config.validation.allow_documentation_ranges
            self.validator.max_pattern_length = config.validation.max_pattern_length
            self.lifecycle.configure(config.lifecycle)
            self.detection.configure(config.detection)
            self.response.configure(config.response)
            self._feed_policy = config.feed_retry.retry_policy()

            wanted = {f.name: f for f in config.feeds if f.enabled}
            for name in list(self._adapters):
                if name not in wanted:
                    del self._adapters[name]
                    self._unschedule_feed(name)
                    logger.info("Feed %s removed", name)
            for name, source in wanted.items():
                current = self._adapters.get(name)
                if current is not None and current.source == source:
                    continue
                self._adapters[name] = build_adapter(source)
                self._schedule_feed(source)
                logger.info("Feed %s %s", name, "updated" if current else "added")

            if config.storage != old.storage or config.enrichment != old.enrichment:
                logger.warning("Storage/enrichment settings changed; they apply after restart")

        self.audit.log_event(
            EventType.CONFIG_RELOADED,
            EventSeverity.INFO,
            "Configuration reloaded",
            details={"feeds": sorted(wanted), "whitelist": len(config.whitelist)},
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self, watch_config: bool = True) -> None:
        """Start scheduled polls, sweeps and archival."""
        if self._scheduler is not None:
            return
        self._cancel.clear()
        self._scheduler = BackgroundScheduler(
            daemon=True,
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        with self._lock:
            sources = [a.source for a in self._adapters.values()]
        for source in sources:
            self._schedule_feed(source, first_run=utcnow())

        cfg = self._config
        self._add_job(self.sweep, cfg.lifecycle.sweep_interval_seconds, "age-sweep", "Indicator age sweep")
        self._add_job(self.archive, cfg.storage.archive_interval_seconds, "archive", "Cold archival")
        self._add_job(self._check_store, STORE_RECOVERY_INTERVAL_SEC, "store-recovery", "Warm tier recovery probe")
        if cfg.detection.batch_interval_seconds and cfg.detection.batch_source:
            self._add_job(self.scan, cfg.detection.batch_interval_seconds, "batch-scan", "Retrospective batch scan")

        self._scheduler.start()
        if watch_config and self._config_path is not None:
            self._watcher = ConfigWatcher(self._config_path, self.reload_config)
            self._watcher.start()

        self.audit.log_event(
            EventType.SYSTEM_START,
            EventSeverity.INFO,
            f"Pipeline started with {len(sources)} feeds",
            details={"feeds": [s.name for s in sources]},
        )
        logger.info("Pipeline scheduler started: %d feeds", len(sources))

    def stop(self) -> None:
        """Cancel running jobs, stop the scheduler and release resources."""
        self._cancel.set()
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self.audit.log_event(EventType.SYSTEM_STOP, EventSeverity.INFO, "Pipeline stopped")
            logger.info("Pipeline scheduler stopped")

    def close(self) -> None:
        self.stop()
        self.detection.close()
        self._enrich_pool.shutdown(wait=True)
        self.enrichment.close()
        self.store.close()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _add_job(self, func: Callable[[], Any], seconds: int, job_id: str, name: str) -> None:
        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            replace_existing=True,
        )

    def _schedule_feed(self, source: FeedSource, first_run: Optional[datetime] = None) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self.poll_feed,
            trigger=IntervalTrigger(seconds=source.poll_interval_seconds),
            args=[source.name],
            id=f"feed:{source.name}",
            name=f"Poll feed {source.name}",
            replace_existing=True,
            next_run_time=first_run or utcnow(),
        )

    def _unschedule_feed(self, name: str) -> None:
        if self._scheduler is None:
            return
        job = self._scheduler.get_job(f"feed:{name}")
        if job is not None:
            job.remove()

    def _reschedule(self, source: FeedSource, delay: timedelta) -> None:
        if self._scheduler is None:
            return
        job = self._scheduler.get_job(f"feed:{source.name}")
        if job is not None:
            job.modify(next_run_time=utcnow() + delay)

    # ------------------------------------------------------------------
    # Alerts & status
    # ------------------------------------------------------------------

    def _forward_alert(self, alert: Alert) -> None:
        self.audit.log_event(
            EventType.QUALITY_ALERT,
            EventSeverity.ALERT,
            alert.message,
            details=alert.to_dict(),
        )

    def status(self) -> Dict[str, Any]:
        with self._lock:
            feeds = {
                name: adapter.get_stats() for name, adapter in self._adapters.items()
            }
        last_sweep = self.lifecycle.last_sweep
        return {
            "running": self.is_running,
            "feeds": feeds,
            "monitor": self.monitor.snapshot(),
            "store": self.store.stats(),
            "validator": self.validator.stats(),
            "enrichment": self.enrichment.stats(),
            "detection": self.detection.stats(),
            "response": self.response.stats(),
            "whitelist": len(self.whitelist),
            "last_poll": self._last_poll.to_dict() if self._last_poll else None,
            "last_sweep": last_sweep.to_dict() if last_sweep else None,
            "last_archive": self._last_archive.to_dict() if self._last_archive else None,
            "last_scan": self._last_scan.to_dict() if self._last_scan else None,
        }
