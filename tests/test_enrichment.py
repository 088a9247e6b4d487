"""
Tests for Enrichment Module.

No network or GeoIP database required: the MaxMind reader and resolver
functions are injected, reputation HTTP calls are mocked.
Covers: TTL cache, each enricher, concurrent fan-out with timeout,
partial results and the cache on the engine path.
"""

import socket
import threading
from unittest.mock import MagicMock, patch

import httpx
import pytest

from threatline.core.config import EnrichmentSettings
from threatline.enrichment import (
    DnsEnricher,
    EnrichmentEngine,
    Enricher,
    GeoEnricher,
    ReputationEnricher,
    TTLCache,
)
from threatline.intel.models import Indicator, IndicatorType


# ===================================================================
# Fixtures & helpers
# ===================================================================

def _ip(value="198.51.100.7") -> Indicator:
    return Indicator(type=IndicatorType.IP, value=value, confidence=0.8, sources={"t"})


def _domain(value="evil.test") -> Indicator:
    return Indicator(type=IndicatorType.DOMAIN, value=value, confidence=0.8, sources={"t"})


def _mock_response(status_code=200, json_data=None):
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else {}
    resp.raise_for_status = MagicMock()
    if status_code >= 400:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(),
            response=resp,
        )
    return resp


class _FakeReader:
    def __init__(self, records):
        self.records = records
        self.closed = False

    def get(self, ip):
        return self.records.get(ip)

    def close(self):
        self.closed = True


class _StaticEnricher(Enricher):
    def __init__(self, name, delta, types=None):
        self.name = name
        self.delta = delta
        self.calls = 0
        if types is not None:
            self.supported_types = frozenset(types)

    def lookup(self, indicator):
        self.calls += 1
        return self.delta


class _FailingEnricher(Enricher):
    name = "broken"

    def lookup(self, indicator):
        raise RuntimeError("upstream exploded")


class _BlockingEnricher(Enricher):
    name = "slow"

    def __init__(self):
        self.release = threading.Event()

    def lookup(self, indicator):
        self.release.wait(5)
        return {"slow": True}


# ===================================================================
# TTL cache
# ===================================================================

class TestTTLCache:
    def test_set_get(self):
        cache = TTLCache()
        cache.set("k", {"a": 1})
        assert cache.get("k") == {"a": 1}
        assert cache.get("missing") is None

    def test_expiry(self):
        now = [100.0]
        cache = TTLCache(default_ttl=10, clock=lambda: now[0])
        cache.set("k", 1)
        now[0] = 109.0
        assert cache.get("k") == 1
        now[0] = 111.0
        assert cache.get("k") is None

    def test_lru_bound(self):
        cache = TTLCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.stats()["evictions"] == 1

    def test_size_purges_expired(self):
        now = [0.0]
        cache = TTLCache(default_ttl=1, clock=lambda: now[0])
        cache.set("a", 1)
        cache.set("b", 2, ttl=100)
        now[0] = 5.0
        assert cache.size == 1


# ===================================================================
# Enrichers
# ===================================================================

class TestGeoEnricher:
    def test_lookup(self):
        reader = _FakeReader({
            "198.51.100.7": {
                "country": {"iso_code": "NL"},
                "city": {"names": {"en": "Amsterdam"}},
                "location": {"latitude": 52.37, "longitude": 4.89},
            }
        })
        geo = GeoEnricher(reader=reader)
        assert geo.lookup(_ip()) == {
            "geo": {"country": "NL", "city": "Amsterdam", "latitude": 52.37, "longitude": 4.89}
        }

    def test_unknown_ip(self):
        assert GeoEnricher(reader=_FakeReader({})).lookup(_ip()) == {}

    def test_missing_database_raises(self, tmp_path):
        geo = GeoEnricher(db_path=str(tmp_path / "none.mmdb"))
        with pytest.raises(FileNotFoundError):
            geo.lookup(_ip())

    def test_supports_only_ip(self):
        geo = GeoEnricher(reader=_FakeReader({}))
        assert geo.supports(_ip())
        assert not geo.supports(_domain())

    def test_close(self):
        reader = _FakeReader({})
        GeoEnricher(reader=reader).close()
        assert reader.closed


class TestDnsEnricher:
    def test_reverse_lookup(self):
        dns = DnsEnricher(gethostbyaddr=lambda ip: ("host.evil.test", ["alias.evil.test"], [ip]))
        assert dns.lookup(_ip()) == {"dns": {"ptr": "host.evil.test", "aliases": ["alias.evil.test"]}}

    def test_reverse_lookup_failure(self):
        def fail(ip):
            raise socket.herror("not found")

        assert DnsEnricher(gethostbyaddr=fail).lookup(_ip()) == {"dns": {"ptr": None}}

    def test_forward_lookup(self):
        infos = [
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("198.51.100.7", 0)),
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("198.51.100.7", 0)),
            (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("2001:db8::1", 0, 0, 0)),
        ]
        dns = DnsEnricher(getaddrinfo=lambda host, port: infos)
        assert dns.lookup(_domain()) == {
            "dns": {"resolves": True, "a": ["198.51.100.7"], "aaaa": ["2001:db8::1"]}
        }

    def test_nxdomain(self):
        def fail(host, port):
            raise socket.gaierror("nxdomain")

        assert DnsEnricher(getaddrinfo=fail).lookup(_domain()) == {"dns": {"resolves": False}}


class TestReputationEnricher:
    @patch("threatline.enrichment.enrichers.httpx.request")
    def test_lookup(self, mock_req):
        mock_req.return_value = _mock_response(200, {"score": 0.9, "malicious": 12, "reports": 30, "family": "qakbot"})
        rep = ReputationEnricher("https://rep.test/lookup").lookup(_ip())
        assert rep == {"reputation": {"score": 0.9, "malicious": 12, "reports": 30, "raw": {"family": "qakbot"}}}
        assert mock_req.call_args.kwargs["params"] == {"type": "ip", "value": "198.51.100.7"}

    @patch("threatline.enrichment.enrichers.httpx.request")
    def test_not_found_is_clean(self, mock_req):
        mock_req.return_value = _mock_response(404)
        rep = ReputationEnricher("https://rep.test/lookup").lookup(_ip())
        assert rep["reputation"]["malicious"] == 0

    @patch("threatline.enrichment.enrichers.time.sleep")
    @patch("threatline.enrichment.enrichers.httpx.request")
    def test_server_error_retried_then_raises(self, mock_req, mock_sleep):
        mock_req.return_value = _mock_response(503)
        with pytest.raises(httpx.HTTPStatusError):
            ReputationEnricher("https://rep.test/lookup").lookup(_ip())
        assert mock_req.call_count == 2

    @patch("threatline.enrichment.enrichers.httpx.request")
    def test_bearer_credential(self, mock_req, monkeypatch):
        monkeypatch.setenv("REP_TOKEN", "tok")
        mock_req.return_value = _mock_response(200, {"score": 0.1})
        ReputationEnricher("https://rep.test/lookup", credentials_ref="REP_TOKEN").lookup(_ip())
        assert mock_req.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"


# ===================================================================
# Engine
# ===================================================================

class TestEnrichmentEngine:
    def test_merges_deltas_and_keeps_identity(self):
        engine = EnrichmentEngine([
            _StaticEnricher("a", {"geo": {"country": "NL"}}),
            _StaticEnricher("b", {"dns": {"ptr": None}}),
        ])
        try:
            ind = _ip()
            enriched = engine.enrich_indicator(ind)
        finally:
            engine.close()
        assert enriched.context["geo"] == {"country": "NL"}
        assert enriched.context["dns"] == {"ptr": None}
        assert enriched.context["enrichment"]["partial"] is False
        assert enriched.key == ind.key
        assert enriched.confidence == ind.confidence
        assert "geo" not in ind.context

    def test_unsupported_types_skipped(self):
        only_ip = _StaticEnricher("ip-only", {"x": 1}, types={IndicatorType.IP})
        engine = EnrichmentEngine([only_ip])
        try:
            result = engine.enrich(_domain())
        finally:
            engine.close()
        assert result.completed == []
        assert only_ip.calls == 0

    def test_failure_is_partial_not_raised(self):
        engine = EnrichmentEngine([_FailingEnricher(), _StaticEnricher("ok", {"ok": True})])
        try:
            result = engine.enrich(_ip())
        finally:
            engine.close()
        assert result.partial
        assert result.failed == ["broken"]
        assert result.delta == {"ok": True}

    def test_timeout_is_partial(self):
        slow = _BlockingEnricher()
        engine = EnrichmentEngine([slow, _StaticEnricher("fast", {"fast": True})], timeout=0.1)
        try:
            enriched = engine.enrich_indicator(_ip())
        finally:
            slow.release.set()
            engine.close()
        assert "slow" not in enriched.context
        assert enriched.context["fast"] is True
        assert enriched.context["enrichment"] == {"partial": True, "failed": [], "timed_out": ["slow"]}
        assert engine.stats()["timed_out"] == 1

    def test_results_cached(self):
        static = _StaticEnricher("a", {"a": 1})
        engine = EnrichmentEngine([static])
        try:
            engine.enrich(_ip())
            second = engine.enrich(_ip())
        finally:
            engine.close()
        assert static.calls == 1
        assert second.delta == {"a": 1}
        assert engine.stats()["cache_hits"] == 1

    def test_monitor_notified_on_partial(self):
        monitor = MagicMock()
        engine = EnrichmentEngine([_FailingEnricher()], monitor=monitor)
        try:
            engine.enrich(_ip())
        finally:
            engine.close()
        monitor.record_enrichment.assert_called_once_with(partial=True, timed_out=0, failed=1)

    def test_from_settings(self):
        engine = EnrichmentEngine.from_settings(EnrichmentSettings(
            dns_enabled=True,
            geoip_db_path="/nonexistent.mmdb",
            reputation_url="https://rep.test",
        ))
        try:
            assert [e.name for e in engine.enrichers] == ["geo", "dns", "reputation"]
        finally:
            engine.close()

    def test_disabled(self):
        engine = EnrichmentEngine.from_settings(EnrichmentSettings(enabled=False))
        try:
            assert engine.enrichers == []
            assert engine.enrich(_ip()).completed == []
        finally:
            engine.close()
