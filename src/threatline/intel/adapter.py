# Intel Module - Abstract Feed Adapter
#
# Defines the FeedAdapter contract every feed format implements:
#
#   fetch()    -> lazy iterator of raw records (one poll cycle; calling it
#                 again restarts from the beginning)
#   parse(raw) -> ParseOutcome (an Indicator or a ParseError value)
#
# Payload retrieval is shared: ``_retrieve()`` fetches http(s) endpoints
# with httpx (credential in the configured auth header, short in-request
# retry on 5xx / 429 / network errors) and reads local files otherwise.
# Poll-level backoff and degradation belong to the pipeline.

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

import httpx

from ..core.config import FeedFormat, FeedSource, resolve_credential
from ..core.errors import FetchError, ParseError
from ..core.retry import RetryPolicy
from .models import Indicator, IndicatorType, ensure_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# In-request retry (per HTTP call, inside one poll)
MAX_RETRIES = 3
INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0
USER_AGENT = "threatline/0.1"


@dataclass(frozen=True)
class ParseOutcome:
    """Result of parsing one raw record: exactly one of the two is set."""

    indicator: Optional[Indicator] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.indicator is not None

    @classmethod
    def success(cls, indicator: Indicator) -> "ParseOutcome":
        return cls(indicator=indicator)

    @classmethod
    def failure(cls, message: str, raw: Any = None) -> "ParseOutcome":
        return cls(error=ParseError(message, raw=raw))

    def unwrap(self) -> Indicator:
        if self.indicator is None:
            raise self.error or ParseError("empty parse outcome")
        return self.indicator


class _Retryable(Exception):
    """Internal marker for a transient HTTP failure."""

    def __init__(self, error: FetchError):
        super().__init__(str(error))
        self.error = error


class FeedAdapter(ABC):
    """Base class for feed format adapters.

    Args:
        source: The feed's configuration (read-only).
        retry: In-request retry policy for HTTP endpoints.
    """

    format: FeedFormat

    def __init__(self, source: FeedSource, retry: Optional[RetryPolicy] = None):
        self.source = source
        self._retry = retry or RetryPolicy(
            max_attempts=MAX_RETRIES,
            initial_delay=INITIAL_BACKOFF_SEC,
            multiplier=BACKOFF_MULTIPLIER,
        )
        self._last_fetch: Optional[str] = None
        self._fetch_count: int = 0
        self._error_count: int = 0

    @property
    def name(self) -> str:
        return self.source.name

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    def fetch(self) -> Iterator[Any]:
        """Yield the raw records of one poll cycle.

        Nothing is retrieved until the first record is requested.
        Raises FetchError (from the first ``next()``) when the endpoint
        cannot be read.
        """
        count = 0
        try:
            for raw in self._records():
                count += 1
                yield raw
        except FetchError:
            self.record_error()
            raise
        self.record_fetch(count)

    @abstractmethod
    def _records(self) -> Iterable[Any]:
        """Retrieve the payload(s) and split them into raw records."""

    @abstractmethod
    def parse(self, raw: Any) -> ParseOutcome:
        """Turn one raw record into an Indicator (or a ParseError value)."""

    def health_check(self) -> bool:
        """Return True if the endpoint answers (or the file exists)."""
        if not self.source.is_remote:
            return Path(self.source.endpoint).exists()
        try:
            resp = httpx.request(
                "HEAD",
                self.source.endpoint,
                headers=self._build_headers(),
                timeout=self.source.timeout_seconds,
            )
            return resp.status_code < 500
        except httpx.HTTPError:
            return False

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {
            "Accept": "application/json, text/csv, */*",
            "User-Agent": USER_AGENT,
        }
        secret = resolve_credential(self.source.credentials_ref)
        if secret:
            scheme = self.source.auth_scheme
            headers[self.source.auth_header] = f"{scheme} {secret}" if scheme else secret
        return headers

    def _retrieve(self, url: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> str:
        """Return the payload text of ``url`` (default: the feed endpoint)."""
        target = url or self.source.endpoint
        if not target.startswith(("http://", "https://")):
            return self._read_file(target)

        def attempt() -> str:
            return self._request_once(target, params)

        try:
            return self._retry.call(
                attempt,
                retry_on=(_Retryable,),
                on_retry=self._log_retry,
                sleep=self._sleep,
                delay_hint=lambda exc: exc.error.retry_after,
            )
        except _Retryable as exc:
            raise FetchError(
                f"{self.name}: request failed after {self._retry.max_attempts} attempts: {exc.error}",
                feed=self.name,
                status_code=exc.error.status_code,
                retry_after=exc.error.retry_after,
            ) from exc

    def _request_once(self, url: str, params: Optional[Dict[str, Any]]) -> str:
        try:
            resp = httpx.request(
                "GET",
                url,
                headers=self._build_headers(),
                params=params,
                timeout=self.source.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise _Retryable(FetchError(f"network error: {exc}", feed=self.name))

        if resp.status_code < 400:
            return resp.text
        if resp.status_code == 429:
            raise _Retryable(FetchError(
                "rate limited (429)",
                feed=self.name,
                status_code=429,
                retry_after=_retry_after_seconds(resp),
            ))
        if resp.status_code >= 500:
            raise _Retryable(FetchError(
                f"server error {resp.status_code}",
                feed=self.name,
                status_code=resp.status_code,
            ))
        # 4xx other than 429: credentials or endpoint are wrong, fail fast
        raise FetchError(
            f"{self.name}: HTTP {resp.status_code} from {url}",
            feed=self.name,
            status_code=resp.status_code,
        )

    def _read_file(self, path: str) -> str:
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise FetchError(f"{self.name}: cannot read {path}: {exc}", feed=self.name) from exc

    def _log_retry(self, attempt: int, exc: BaseException, delay: float) -> None:
        logger.warning(
            "Feed %s request failed (%s), retrying in %.1fs (attempt %d/%d)",
            self.name, exc, delay, attempt, self._retry.max_attempts,
        )

    @staticmethod
    def _sleep(seconds: float) -> None:
        time.sleep(seconds)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _build_indicator(
        self,
        ioc_type: IndicatorType,
        value: str,
        confidence: Optional[float] = None,
        first_seen: Any = None,
        last_seen: Any = None,
        tags: Iterable[str] = (),
        context: Optional[Dict[str, Any]] = None,
    ) -> Indicator:
        """Build an Indicator attributed to this feed.

        Feed confidence (or the feed default) is scaled by the feed's
        trust weight.
        """
        base = self.source.default_confidence if confidence is None else float(confidence)
        now = utcnow()
        first: datetime = parse_timestamp(first_seen, None) or parse_timestamp(last_seen, now) or now
        last: datetime = parse_timestamp(last_seen, None) or first
        if first > last:
            first, last = last, first
        return Indicator(
            type=ioc_type,
            value=value,
            confidence=base * self.source.trust_weight,
            sources={self.name},
            first_seen=first,
            last_seen=last,
            tags=set(tags),
            context=dict(context or {}),
        )

    def record_fetch(self, count: int) -> None:
        """Record a successful poll for stats tracking."""
        self._last_fetch = utcnow().isoformat()
        self._fetch_count += count

    def record_error(self) -> None:
        self._error_count += 1

    def get_stats(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "format": self.format.value,
            "last_fetch": self._last_fetch,
            "total_fetched": self._fetch_count,
            "total_errors": self._error_count,
        }


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (ensure_utc(when) - utcnow()).total_seconds())


def parse_confidence(value: Any) -> Optional[float]:
    """Feed confidence as 0-1; values above 1 are read as percentages."""
    if value is None or value == "":
        return None
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return None
    if conf > 1.0:
        conf = conf / 100.0
    return min(1.0, max(0.0, conf))


def parse_tags(value: Any) -> list:
    """Tags from a list or a comma/semicolon/pipe separated string."""
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        out = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("name", "")
            if item:
                out.append(str(item).strip())
        return [t for t in out if t]
    text = str(value)
    for sep in (";", "|"):
        text = text.replace(sep, ",")
    return [t.strip() for t in text.split(",") if t.strip()]
