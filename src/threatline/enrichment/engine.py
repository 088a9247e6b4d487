# Enrichment Module - Enrichment Engine
#
# Runs every applicable enricher for an indicator concurrently on a shared
# thread pool and joins them with a timeout.  A slow or failing enricher
# contributes nothing; the outcome is recorded on the result (and on the
# indicator's ``context["enrichment"]``), never raised.  Enrichment only
# adds context: type, value and confidence are left untouched.

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from ..core.config import EnrichmentSettings
from ..intel.models import Indicator
from .cache import TTLCache
from .enrichers import DnsEnricher, Enricher, GeoEnricher, ReputationEnricher

if TYPE_CHECKING:
    from ..monitor.quality import QualityMonitor

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentResult:
    delta: Dict[str, Any] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed or self.timed_out)

    def apply(self, indicator: Indicator) -> Indicator:
        """Return a copy of ``indicator`` with the delta merged into context."""
        enriched = indicator.copy()
        enriched.context.update(self.delta)
        enriched.context["enrichment"] = {
            "partial": self.partial,
            "failed": sorted(self.failed),
            "timed_out": sorted(self.timed_out),
        }
        return enriched


class EnrichmentEngine:
    """Fan out enrichers per indicator with a join timeout and a TTL cache.

    Args:
        enrichers: Context sources to consult.
        timeout: Seconds to wait for all enrichers of one indicator.
        max_workers: Shared pool size.
        cache: Result cache keyed by (enricher, type, value).
        monitor: Optional quality monitor for partial/timeout counters.
    """

    def __init__(
        self,
        enrichers: Sequence[Enricher],
        timeout: float = 2.0,
        max_workers: int = 8,
        cache: Optional[TTLCache] = None,
        monitor: Optional["QualityMonitor"] = None,
    ):
        self._enrichers = list(enrichers)
        self.timeout = timeout
        self._cache = cache if cache is not None else TTLCache()
        self._monitor = monitor
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enrich")
        self._lock = threading.Lock()
        self._stats = {"enriched": 0, "partial": 0, "timed_out": 0, "failed": 0, "cache_hits": 0}

    @classmethod
    def from_settings(
        cls,
        settings: EnrichmentSettings,
        monitor: Optional["QualityMonitor"] = None,
    ) -> "EnrichmentEngine":
        enrichers: List[Enricher] = []
        if settings.enabled:
            if settings.geoip_db_path:
                enrichers.append(GeoEnricher(settings.geoip_db_path))
            if settings.dns_enabled:
                enrichers.append(DnsEnricher())
            if settings.reputation_url:
                enrichers.append(ReputationEnricher(
                    settings.reputation_url,
                    credentials_ref=settings.reputation_credentials_ref,
                    timeout=settings.timeout_seconds,
                ))
        return cls(
            enrichers,
            timeout=settings.timeout_seconds,
            max_workers=settings.max_workers,
            cache=TTLCache(settings.cache_ttl_seconds, settings.cache_max_entries),
            monitor=monitor,
        )

    @property
    def enrichers(self) -> List[Enricher]:
        return list(self._enrichers)

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def enrich(self, indicator: Indicator) -> EnrichmentResult:
        result = EnrichmentResult()
        pending: Dict[Future, Enricher] = {}

        for enricher in self._enrichers:
            if not enricher.supports(indicator):
                continue
            cache_key = (enricher.name, indicator.type.value, indicator.value)
            cached = self._cache.get(cache_key)
            if cached is not None:
                result.delta.update(cached)
                result.completed.append(enricher.name)
                self._bump("cache_hits")
                continue
            pending[self._pool.submit(enricher.lookup, indicator)] = enricher

        if pending:
            done, not_done = wait(pending, timeout=self.timeout)
            for future in done:
                enricher = pending[future]
                exc = future.exception()
                if exc is not None:
                    logger.warning(
                        "Enricher %s failed for %s %s: %s",
                        enricher.name, indicator.type.value, indicator.value, exc,
                    )
                    result.failed.append(enricher.name)
                    continue
                delta = future.result() or {}
                self._cache.set((enricher.name, indicator.type.value, indicator.value), delta)
                result.delta.update(delta)
                result.completed.append(enricher.name)
            for future in not_done:
                future.cancel()
                enricher = pending[future]
                logger.debug(
                    "Enricher %s timed out after %.2fs for %s",
                    enricher.name, self.timeout, indicator.value,
                )
                result.timed_out.append(enricher.name)

        self._record(result)
        return result

    def enrich_indicator(self, indicator: Indicator) -> Indicator:
        """Enrich and return the updated copy."""
        return self.enrich(indicator).apply(indicator)

    def _record(self, result: EnrichmentResult) -> None:
        with self._lock:
            self._stats["enriched"] += 1
            if result.partial:
                self._stats["partial"] += 1
            self._stats["timed_out"] += len(result.timed_out)
            self._stats["failed"] += len(result.failed)
        if self._monitor is not None and result.partial:
            self._monitor.record_enrichment(
                partial=True,
                timed_out=len(result.timed_out),
                failed=len(result.failed),
            )

    def _bump(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = dict(self._stats)
        out["enrichers"] = [e.name for e in self._enrichers]
        out["cache"] = self._cache.stats()
        return out

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        for enricher in self._enrichers:
            enricher.close()
