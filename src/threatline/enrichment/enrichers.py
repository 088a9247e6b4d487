# Enrichment Module - Context Enrichers
#
# Each enricher answers for the indicator types it supports and returns a
# context delta (a dict merged into Indicator.context).  Enrichers may
# raise; the engine records the failure and moves on.
#
#   GeoEnricher         ip      -> {"geo": {...}}         MaxMind database
#   DnsEnricher         ip      -> {"dns": {"ptr": ...}}  system resolver
#                       domain  -> {"dns": {"a": [...], "aaaa": [...]}}
#   ReputationEnricher  any     -> {"reputation": {...}}  HTTP+JSON service

import logging
import os
import socket
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx
import maxminddb

from ..core.config import resolve_credential
from ..core.retry import RetryPolicy
from ..intel.models import Indicator, IndicatorType

logger = logging.getLogger(__name__)


class Enricher(ABC):
    """Base class for a single context source."""

    name: str = "enricher"
    supported_types: FrozenSet[IndicatorType] = frozenset(IndicatorType)

    def supports(self, indicator: Indicator) -> bool:
        return indicator.type in self.supported_types

    @abstractmethod
    def lookup(self, indicator: Indicator) -> Dict[str, Any]:
        """Return the context delta for ``indicator`` (may be empty)."""

    def close(self) -> None:
        """Release any held resources."""


# ---------------------------------------------------------------------------
# GeoIP
# ---------------------------------------------------------------------------


class GeoEnricher(Enricher):
    """Country/city/ASN for IP indicators from a MaxMind (.mmdb) database.

    Args:
        db_path: Path to a GeoLite2/GeoIP2 City or ASN database.
        reader: Pre-opened reader (tests inject a fake).
    """

    name = "geo"
    supported_types = frozenset({IndicatorType.IP})

    def __init__(self, db_path: Optional[str] = None, reader: Any = None):
        self.db_path = db_path
        self._reader = reader
        self._lock = threading.Lock()

    def _get_reader(self):
        with self._lock:
            if self._reader is None:
                if not self.db_path or not os.path.exists(self.db_path):
                    raise FileNotFoundError(f"GeoIP database not found at {self.db_path}")
                self._reader = maxminddb.open_database(self.db_path)
                logger.info("GeoIP database loaded from %s", self.db_path)
            return self._reader

    def lookup(self, indicator: Indicator) -> Dict[str, Any]:
        record = self._get_reader().get(indicator.value)
        if not record:
            return {}
        geo = {
            "country": (record.get("country") or {}).get("iso_code"),
            "city": ((record.get("city") or {}).get("names") or {}).get("en"),
            "latitude": (record.get("location") or {}).get("latitude"),
            "longitude": (record.get("location") or {}).get("longitude"),
            "asn": record.get("autonomous_system_number"),
            "as_org": record.get("autonomous_system_organization"),
        }
        geo = {k: v for k, v in geo.items() if v is not None}
        return {"geo": geo} if geo else {}

    def close(self) -> None:
        with self._lock:
            if self._reader is not None and hasattr(self._reader, "close"):
                self._reader.close()
            self._reader = None


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------


class DnsEnricher(Enricher):
    """Reverse PTR for IPs, forward A/AAAA for domains (system resolver)."""

    name = "dns"
    supported_types = frozenset({IndicatorType.IP, IndicatorType.DOMAIN})

    def __init__(
        self,
        gethostbyaddr: Callable = socket.gethostbyaddr,
        getaddrinfo: Callable = socket.getaddrinfo,
    ):
        self._gethostbyaddr = gethostbyaddr
        self._getaddrinfo = getaddrinfo

    def lookup(self, indicator: Indicator) -> Dict[str, Any]:
        if indicator.type == IndicatorType.IP:
            try:
                host, aliases, _ = self._gethostbyaddr(indicator.value)
            except (socket.herror, socket.gaierror):
                return {"dns": {"ptr": None}}
            return {"dns": {"ptr": host, "aliases": list(aliases)}}

        try:
            infos = self._getaddrinfo(indicator.value, None)
        except socket.gaierror:
            return {"dns": {"resolves": False}}
        a: List[str] = []
        aaaa: List[str] = []
        for family, _type, _proto, _canon, sockaddr in infos:
            addr = sockaddr[0]
            bucket = aaaa if family == socket.AF_INET6 else a
            if addr not in bucket:
                bucket.append(addr)
        return {"dns": {"resolves": bool(a or aaaa), "a": sorted(a), "aaaa": sorted(aaaa)}}


# ---------------------------------------------------------------------------
# Reputation
# ---------------------------------------------------------------------------


class ReputationEnricher(Enricher):
    """Query an HTTP+JSON reputation service.

    Expects ``GET <url>?type=<type>&value=<value>`` to answer with
    ``{"score": float, "malicious": int, "reports": int}`` (extra keys kept
    under ``reputation.raw``).
    """

    name = "reputation"

    def __init__(
        self,
        url: str,
        credentials_ref: Optional[str] = None,
        timeout: float = 2.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self.url = url
        self.credentials_ref = credentials_ref
        self.timeout = timeout
        self._retry = retry or RetryPolicy(max_attempts=2, initial_delay=0.2, max_delay=1.0)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        secret = resolve_credential(self.credentials_ref)
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        return headers

    def _request(self, indicator: Indicator) -> httpx.Response:
        resp = httpx.request(
            "GET",
            self.url,
            headers=self._headers(),
            params={"type": indicator.type.value, "value": indicator.value},
            timeout=self.timeout,
        )
        if resp.status_code >= 500 or resp.status_code == 429:
            resp.raise_for_status()
        return resp

    def lookup(self, indicator: Indicator) -> Dict[str, Any]:
        resp = self._retry.call(
            lambda: self._request(indicator),
            retry_on=(httpx.HTTPError,),
            sleep=lambda s: time.sleep(s),
        )
        if resp.status_code == 404:
            return {"reputation": {"score": 0.0, "malicious": 0, "reports": 0}}
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("reputation response is not an object")
        rep = {
            "score": float(data.get("score", 0.0)),
            "malicious": int(data.get("malicious", 0)),
            "reports": int(data.get("reports", 0)),
        }
        extra = {k: v for k, v in data.items() if k not in rep}
        if extra:
            rep["raw"] = extra
        return {"reputation": rep}
