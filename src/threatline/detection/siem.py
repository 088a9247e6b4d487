# Detection Module - Outbound SIEM Push
#
# Detections leave the pipeline as flat records:
#   {timestamp, indicatorType, indicatorValue, confidence, source,
#    detectionMethod, severity}
# Delivery is at-least-once: a batch is retried with the shared backoff
# policy and re-raised as SiemDeliveryError when every attempt fails.

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..core.config import resolve_credential
from ..core.errors import ThreatlineError
from ..core.retry import RetryPolicy
from ..intel.models import Detection

logger = logging.getLogger(__name__)


class SiemDeliveryError(ThreatlineError):
    """A batch of detection records could not be delivered."""


class SiemSink(ABC):
    """Destination for outbound detection records."""

    @abstractmethod
    def push(self, records: Sequence[Dict[str, Any]]) -> None:
        """Deliver ``records``; raise SiemDeliveryError on failure."""

    def push_detections(self, detections: Sequence[Detection]) -> None:
        if detections:
            self.push([d.to_siem_record() for d in detections])

    def close(self) -> None:
        """Release resources."""


class MemorySiemSink(SiemSink):
    """Collects records in memory (offline runs and tests)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[Dict[str, Any]] = []

    def push(self, records: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            self.records.extend(records)


class HttpSiemSink(SiemSink):
    """POST records as a JSON array to a SIEM ingestion endpoint.

    Args:
        url: Ingestion endpoint.
        credentials_ref: Environment variable holding a bearer token.
        timeout: Per-request timeout in seconds.
        retry: Backoff policy for failed deliveries.
    """

    def __init__(
        self,
        url: str,
        credentials_ref: Optional[str] = None,
        timeout: float = 10.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self.url = url
        self.credentials_ref = credentials_ref
        self.timeout = timeout
        self._retry = retry or RetryPolicy()
        self.delivered = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = resolve_credential(self.credentials_ref)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _post(self, records: Sequence[Dict[str, Any]]) -> None:
        resp = httpx.request(
            "POST",
            self.url,
            headers=self._headers(),
            json=list(records),
            timeout=self.timeout,
        )
        resp.raise_for_status()

    def push(self, records: Sequence[Dict[str, Any]]) -> None:
        if not records:
            return
        try:
            self._retry.call(
                lambda: self._post(records),
                retry_on=(httpx.HTTPError,),
                sleep=lambda s: time.sleep(s),
            )
        except httpx.HTTPError as exc:
            logger.error("SIEM delivery of %d records failed: %s", len(records), exc)
            raise SiemDeliveryError(f"SIEM delivery failed: {exc}") from exc
        self.delivered += len(records)
        logger.debug("Delivered %d detection records to SIEM", len(records))
