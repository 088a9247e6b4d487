"""
Tests for Intel Module - Indicator Data Models.

Covers: type parsing and aliases, value normalization and refanging,
Indicator invariants, serialization, Detection immutability and the
outbound SIEM record shape.
"""

from datetime import datetime, timedelta, timezone

import pytest

from threatline.intel.models import (
    Detection,
    DetectionMethod,
    Indicator,
    IndicatorStatus,
    IndicatorType,
    SeverityLevel,
    normalize_value,
    parse_timestamp,
    refang,
)


# ===================================================================
# Helpers
# ===================================================================

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _ind(ioc_type=IndicatorType.DOMAIN, value="bad-example.test", **kw) -> Indicator:
    kw.setdefault("confidence", 0.8)
    kw.setdefault("sources", {"feed-a"})
    kw.setdefault("first_seen", T0)
    return Indicator(type=ioc_type, value=value, **kw)


# ===================================================================
# IndicatorType
# ===================================================================

class TestIndicatorType:
    def test_hash_members(self):
        assert IndicatorType.MD5.is_hash
        assert IndicatorType.SHA256.is_hash
        assert not IndicatorType.IP.is_hash

    def test_hashes_share_aging_class(self):
        assert IndicatorType.MD5.aging_class == "hash"
        assert IndicatorType.SHA1.aging_class == "hash"
        assert IndicatorType.URL.aging_class == "url"

    @pytest.mark.parametrize("text,expected", [
        ("ipv4", IndicatorType.IP),
        ("IPv6", IndicatorType.IP),
        ("FileHash-SHA256", IndicatorType.SHA256),
        ("domain-name", IndicatorType.DOMAIN),
        ("registry_key", IndicatorType.REGISTRY_KEY),
        ("command line", IndicatorType.COMMAND_PATTERN),
        ("url", IndicatorType.URL),
    ])
    def test_parse_aliases(self, text, expected):
        assert IndicatorType.parse(text) == expected

    def test_parse_unknown_raises(self):
        with pytest.raises(ValueError):
            IndicatorType.parse("mutex")


# ===================================================================
# Normalization
# ===================================================================

class TestNormalization:
    def test_refang(self):
        assert refang("hxxp://evil[.]com/a") == "http://evil.com/a"
        assert refang("evil[dot]com") == "evil.com"

    def test_domain_lowercase_and_trailing_dot(self):
        assert normalize_value(IndicatorType.DOMAIN, "Evil.Example.COM.") == "evil.example.com"

    def test_ip_canonical_form(self):
        assert normalize_value(IndicatorType.IP, "2001:DB8:0:0::1") == "2001:db8::1"
        assert normalize_value(IndicatorType.IP, "198.51.100[.]7") == "198.51.100.7"

    def test_malformed_ip_left_for_validator(self):
        assert normalize_value(IndicatorType.IP, " 999.999.999.999 ") == "999.999.999.999"

    def test_url_scheme_and_host_lowercased_path_kept(self):
        value = normalize_value(IndicatorType.URL, "HTTPS://Evil.COM/Path/File.EXE")
        assert value == "https://evil.com/Path/File.EXE"

    def test_hash_lowercased(self):
        assert normalize_value(IndicatorType.MD5, "D41D8CD98F00B204E9800998ECF8427E") == \
            "d41d8cd98f00b204e9800998ecf8427e"

    def test_pattern_kept_verbatim(self):
        assert normalize_value(IndicatorType.COMMAND_PATTERN, "  powershell -enc AAA ") == "powershell -enc AAA"


# ===================================================================
# Indicator
# ===================================================================

class TestIndicator:
    def test_key_uses_normalized_value(self):
        ind = _ind(value="BAD-Example.Test.")
        assert ind.key == (IndicatorType.DOMAIN, "bad-example.test")

    def test_type_string_coerced(self):
        ind = Indicator(type="ipv4", value="198.51.100.7")
        assert ind.type == IndicatorType.IP

    def test_confidence_clamped(self):
        assert _ind(confidence=1.7).confidence == 1.0
        assert _ind(confidence=-0.2).confidence == 0.0

    def test_nan_confidence_rejected(self):
        with pytest.raises(ValueError):
            _ind(confidence=float("nan"))

    def test_last_seen_defaults_to_first_seen(self):
        ind = _ind()
        assert ind.last_seen == ind.first_seen

    def test_first_seen_after_last_seen_rejected(self):
        with pytest.raises(ValueError):
            _ind(first_seen=T0, last_seen=T0 - timedelta(days=1))

    def test_naive_timestamps_treated_as_utc(self):
        ind = _ind(first_seen=datetime(2025, 1, 1))
        assert ind.first_seen.tzinfo is not None

    def test_copy_is_deep(self):
        ind = _ind(context={"geo": {"country": "NL"}}, tags={"c2"})
        dup = ind.copy()
        dup.context["geo"]["country"] = "DE"
        dup.tags.add("apt")
        assert ind.context["geo"]["country"] == "NL"
        assert ind.tags == {"c2"}

    def test_is_live(self):
        assert _ind(status=IndicatorStatus.AGING).is_live
        assert not _ind(status=IndicatorStatus.EXPIRED).is_live
        assert not _ind(status=IndicatorStatus.WHITELISTED).is_live

    def test_dict_round_trip(self):
        ind = _ind(tags={"c2", "apt"}, context={"dns": {"resolves": False}})
        restored = Indicator.from_dict(ind.to_dict())
        assert restored == ind

    def test_source_is_deterministic(self):
        ind = _ind(sources={"zeta", "alpha"})
        assert ind.source == "alpha"


# ===================================================================
# Timestamps
# ===================================================================

class TestParseTimestamp:
    def test_iso_with_z(self):
        assert parse_timestamp("2025-01-01T00:00:00Z") == T0

    def test_csv_format(self):
        assert parse_timestamp("2025-01-01 00:00:00") == T0

    def test_epoch(self):
        assert parse_timestamp(1735689600) == T0
        assert parse_timestamp("1735689600") == T0

    def test_garbage_returns_default(self):
        assert parse_timestamp("yesterday-ish", T0) == T0
        assert parse_timestamp("") is None


# ===================================================================
# Detection
# ===================================================================

class TestDetection:
    def _detection(self, ind=None, severity=0.7):
        return Detection(
            indicator=ind or _ind(),
            event={"query": "bad-example.test", "host": "ws-01"},
            matched_value="bad-example.test",
            severity=severity,
            method=DetectionMethod.REALTIME,
        )

    def test_snapshot_of_indicator(self):
        ind = _ind()
        det = self._detection(ind)
        ind.confidence = 0.1
        ind.sources.add("feed-b")
        assert det.indicator.confidence == 0.8
        assert det.indicator.sources == {"feed-a"}

    def test_event_is_read_only(self):
        det = self._detection()
        with pytest.raises(TypeError):
            det.event["host"] = "other"

    def test_frozen(self):
        det = self._detection()
        with pytest.raises(AttributeError):
            det.severity = 0.1

    def test_severity_clamped_and_levelled(self):
        assert self._detection(severity=1.4).severity == 1.0
        assert self._detection(severity=0.85).severity_level == SeverityLevel.CRITICAL
        assert self._detection(severity=0.6).severity_level == SeverityLevel.HIGH
        assert self._detection(severity=0.31).severity_level == SeverityLevel.MEDIUM
        assert self._detection(severity=0.1).severity_level == SeverityLevel.LOW

    def test_supersede_links_records(self):
        det = self._detection()
        newer = det.supersede(severity=0.9)
        assert newer.supersedes == det.detection_id
        assert newer.detection_id != det.detection_id
        assert det.severity == 0.7

    def test_siem_record_shape(self):
        record = self._detection().to_siem_record()
        assert set(record) == {
            "timestamp", "indicatorType", "indicatorValue", "confidence",
            "source", "detectionMethod", "severity",
        }
        assert record["indicatorType"] == "domain"
        assert record["indicatorValue"] == "bad-example.test"
        assert record["detectionMethod"] == "realtime"
        assert record["source"] == "feed-a"
