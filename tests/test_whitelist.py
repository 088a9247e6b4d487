"""
Tests for Intel Module - Whitelist.
"""

from datetime import datetime, timedelta, timezone

from threatline.core.config import WhitelistEntryConfig
from threatline.intel.models import IndicatorType
from threatline.intel.whitelist import Whitelist, WhitelistEntry


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestWhitelistEntry:
    def test_create_normalizes(self):
        entry = WhitelistEntry.create("domain", "Intranet.Corp.Example.")
        assert entry.type == IndicatorType.DOMAIN
        assert entry.value == "intranet.corp.example"

    def test_expiry(self):
        entry = WhitelistEntry.create(IndicatorType.IP, "198.51.100.7", expires_at=NOW)
        assert not entry.is_expired(NOW - timedelta(seconds=1))
        assert entry.is_expired(NOW)

    def test_no_expiry_never_expires(self):
        entry = WhitelistEntry.create(IndicatorType.IP, "198.51.100.7")
        assert not entry.is_expired(NOW + timedelta(days=10_000))


class TestWhitelist:
    def test_contains(self):
        wl = Whitelist([WhitelistEntry.create("ip", "198.51.100.7")])
        assert wl.contains(IndicatorType.IP, "198.51.100.7")
        assert wl.contains_key((IndicatorType.IP, "198.51.100.7"))
        assert not wl.contains(IndicatorType.DOMAIN, "198.51.100.7")

    def test_expired_entry_not_contained(self):
        wl = Whitelist([WhitelistEntry.create("ip", "198.51.100.7", expires_at=NOW)])
        assert wl.contains(IndicatorType.IP, "198.51.100.7", NOW - timedelta(hours=1))
        assert not wl.contains(IndicatorType.IP, "198.51.100.7", NOW + timedelta(hours=1))

    def test_remove_normalizes_value(self):
        wl = Whitelist([WhitelistEntry.create("domain", "cdn.vendor.test")])
        assert wl.remove(IndicatorType.DOMAIN, "CDN.Vendor.Test")
        assert len(wl) == 0
        assert not wl.remove(IndicatorType.DOMAIN, "cdn.vendor.test")

    def test_replace_all_reports_diff(self):
        a = WhitelistEntry.create("domain", "a.vendor.test")
        b = WhitelistEntry.create("domain", "b.vendor.test")
        c = WhitelistEntry.create("domain", "c.vendor.test")
        wl = Whitelist([a, b])
        added, removed = wl.replace_all([b, c])
        assert added == [c]
        assert removed == [a]
        assert {e.value for e in wl.entries()} == {"b.vendor.test", "c.vendor.test"}

    def test_prune_expired(self):
        keep = WhitelistEntry.create("domain", "keep.vendor.test")
        drop = WhitelistEntry.create("domain", "drop.vendor.test", expires_at=NOW)
        wl = Whitelist([keep, drop])
        assert wl.prune_expired(NOW + timedelta(days=1)) == [drop]
        assert len(wl) == 1

    def test_from_config(self):
        configs = [
            WhitelistEntryConfig(type="ipv4", value="198.51.100.7", reason="scanner"),
            WhitelistEntryConfig(type="domain", value="Vendor.Test"),
        ]
        wl = Whitelist.from_config(configs)
        assert wl.contains(IndicatorType.IP, "198.51.100.7")
        assert wl.contains(IndicatorType.DOMAIN, "vendor.test")
        assert wl.get(IndicatorType.IP, "198.51.100.7").reason == "scanner"
