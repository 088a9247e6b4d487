"""
Tests for Storage Module - Hot / Warm / Cold tiers and the TieredStore.

Uses temp SQLite files and temp cold directories.
Covers: LRU eviction, warm queries, cold segments, upsert/merge with a
single live record per key, concurrent upserts, real-time lookups with
async promotion, hot-write failure queueing, warm-tier halt/recovery and
archival.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from threatline.core.errors import StoreUnavailable
from threatline.intel.models import Indicator, IndicatorStatus, IndicatorType
from threatline.storage import ColdArchive, HotTier, TieredStore, WarmTier
from threatline.storage.hot import KeyLockTable


# ===================================================================
# Helpers
# ===================================================================

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ind(value="198.51.100.7", ioc_type=IndicatorType.IP, days_old=0, **kw) -> Indicator:
    seen = NOW - timedelta(days=days_old)
    kw.setdefault("confidence", 0.7)
    kw.setdefault("sources", {"feed-a"})
    kw.setdefault("first_seen", seen)
    kw.setdefault("last_seen", seen)
    return Indicator(type=ioc_type, value=value, **kw)


class _FlakyHot(HotTier):
    """Hot tier whose writes (or removals) fail while the flags are set."""

    def __init__(self, capacity=100):
        super().__init__(capacity)
        self.broken = False
        self.remove_broken = False

    def put(self, indicator):
        if self.broken:
            raise MemoryError("hot tier write failed")
        return super().put(indicator)

    def remove(self, key):
        if self.remove_broken:
            raise MemoryError("hot tier remove failed")
        return super().remove(key)


# ===================================================================
# Hot tier
# ===================================================================

class TestHotTier:
    def test_lru_eviction(self):
        hot = HotTier(capacity=2)
        a, b, c = _ind("198.51.100.1"), _ind("198.51.100.2"), _ind("198.51.100.3")
        hot.put(a)
        hot.put(b)
        hot.touch(a.key)
        evicted = hot.put(c)
        assert [e.key for e in evicted] == [b.key]
        assert a.key in hot
        assert len(hot) == 2
        assert hot.stats()["evictions"] == 1

    def test_hit_miss_counters(self):
        hot = HotTier()
        hot.put(_ind())
        hot.get(_ind().key)
        hot.get((IndicatorType.IP, "198.51.100.99"))
        stats = hot.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            HotTier(capacity=0)

    def test_key_lock_table_is_stable(self):
        table = KeyLockTable(stripes=8)
        key = (IndicatorType.IP, "198.51.100.7")
        assert table.lock_for(key) is table.lock_for(key)


# ===================================================================
# Warm tier
# ===================================================================

class TestWarmTier:
    @pytest.fixture
    def warm(self, tmp_path):
        w = WarmTier(str(tmp_path / "warm.db"))
        yield w
        w.close()

    def test_round_trip(self, warm):
        ind = _ind(tags={"c2"}, context={"geo": {"country": "NL"}})
        warm.upsert(ind)
        loaded = warm.get(ind.key)
        assert loaded == ind

    def test_upsert_replaces(self, warm):
        warm.upsert(_ind(confidence=0.3))
        warm.upsert(_ind(confidence=0.9))
        assert warm.count() == 1
        assert warm.get(_ind().key).confidence == 0.9

    def test_get_many(self, warm):
        warm.upsert(_ind("198.51.100.1"))
        warm.upsert(_ind("evil.test", IndicatorType.DOMAIN))
        found = warm.get_many([
            (IndicatorType.IP, "198.51.100.1"),
            (IndicatorType.DOMAIN, "evil.test"),
            (IndicatorType.DOMAIN, "absent.test"),
        ])
        assert set(found) == {(IndicatorType.IP, "198.51.100.1"), (IndicatorType.DOMAIN, "evil.test")}

    def test_range_by_last_seen(self, warm):
        warm.upsert(_ind("198.51.100.1", days_old=1))
        warm.upsert(_ind("198.51.100.2", days_old=10))
        recent = warm.range_by_last_seen(start=NOW - timedelta(days=5))
        assert [i.value for i in recent] == ["198.51.100.1"]

    def test_by_tag(self, warm):
        warm.upsert(_ind("198.51.100.1", tags={"c2"}))
        warm.upsert(_ind("198.51.100.2", tags={"spam"}))
        assert [i.value for i in warm.by_tag("c2")] == ["198.51.100.1"]

    def test_iter_chunks_by_status(self, warm):
        for i in range(5):
            warm.upsert(_ind(f"198.51.100.{i + 1}"))
        warm.upsert(_ind("198.51.100.9", status=IndicatorStatus.EXPIRED))
        chunks = list(warm.iter_chunks(2, statuses=[IndicatorStatus.ACTIVE]))
        assert [len(c) for c in chunks] == [2, 2, 1]

    def test_purge_retention(self, warm):
        warm.upsert(_ind("198.51.100.1", days_old=60, status=IndicatorStatus.EXPIRED))
        warm.upsert(_ind("198.51.100.2", days_old=60))
        assert warm.purge_retention(28, now=NOW) == 1
        assert warm.count() == 1

    def test_stats(self, warm):
        warm.upsert(_ind())
        assert warm.stats()["by_status"]["active"] == 1


# ===================================================================
# Cold archive
# ===================================================================

class TestColdArchive:
    def test_segments_are_append_only(self, tmp_path):
        cold = ColdArchive(str(tmp_path / "cold"))
        first = cold.append([_ind("198.51.100.1")], reason="expired")
        second = cold.append([_ind("198.51.100.2")])
        assert first != second
        assert len(cold.segments()) == 2
        assert cold.count() == 2
        assert [i.value for i in cold.iter_indicators()] == ["198.51.100.1", "198.51.100.2"]

    def test_empty_append_writes_nothing(self, tmp_path):
        cold = ColdArchive(str(tmp_path / "cold"))
        assert cold.append([]) is None
        assert cold.segments() == []


# ===================================================================
# Tiered store
# ===================================================================

class TestTieredStore:
    def test_upsert_merges_single_record(self, store):
        store.upsert(_ind(sources={"a"}, confidence=0.4))
        stored = store.upsert(_ind(sources={"b"}, confidence=0.9))
        assert stored.sources == {"a", "b"}
        assert stored.confidence == 0.9
        assert store.warm.count() == 1
        assert store.hot.get(stored.key).sources == {"a", "b"}
        assert store.stats()["merges"] == 1

    def test_concurrent_upserts_keep_one_record(self, store):
        def worker(n):
            for i in range(20):
                store.upsert(_ind(sources={f"feed-{n}"}, confidence=(n * 20 + i) / 200))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        stored = store.get(_ind().key)
        assert store.warm.count() == 1
        assert stored.sources == {f"feed-{n}" for n in range(5)}
        assert stored.confidence == pytest.approx(99 / 200)

    def test_lookup_realtime_hit(self, store):
        store.upsert(_ind())
        assert store.lookup_realtime(_ind().key) is not None

    def test_lookup_realtime_miss_promotes_async(self, store):
        store.upsert(_ind())
        store.hot.clear()
        assert store.lookup_realtime(_ind().key) is None
        assert store.wait_for_promotions()
        assert _ind().key in store.hot

    def test_lookup_reads_through_warm(self, store):
        store.upsert(_ind())
        store.hot.clear()
        assert store.lookup(_ind().key) is not None
        assert _ind().key in store.hot

    def test_expired_not_promoted(self, store):
        store.warm.upsert(_ind(status=IndicatorStatus.EXPIRED))
        assert store.lookup(_ind().key).status == IndicatorStatus.EXPIRED
        assert _ind().key not in store.hot

    def test_lookup_many(self, store):
        store.upsert(_ind("198.51.100.1"))
        store.upsert(_ind("198.51.100.2"))
        store.hot.remove((IndicatorType.IP, "198.51.100.2"))
        found = store.lookup_many([
            (IndicatorType.IP, "198.51.100.1"),
            (IndicatorType.IP, "198.51.100.2"),
            (IndicatorType.IP, "198.51.100.3"),
        ])
        assert len(found) == 2

    def test_update_expired_drops_from_hot(self, store):
        store.upsert(_ind())

        def expire(current):
            updated = current.copy()
            updated.status = IndicatorStatus.EXPIRED
            return updated

        store.update(_ind().key, expire)
        assert _ind().key not in store.hot
        assert store.get(_ind().key).status == IndicatorStatus.EXPIRED

    def test_update_none_leaves_record(self, store):
        store.upsert(_ind())
        assert store.update(_ind().key, lambda cur: None) is None
        assert store.get(_ind().key) is not None

    def test_remove(self, store):
        store.upsert(_ind())
        assert store.remove(_ind().key)
        assert store.get(_ind().key) is None
        assert _ind().key not in store.hot


class TestStoreFailures:
    def test_hot_write_failure_is_queued_and_flushed(self, tmp_path):
        hot = _FlakyHot()
        store = TieredStore(hot, WarmTier(str(tmp_path / "w.db")), ColdArchive(str(tmp_path / "c")))
        try:
            hot.broken = True
            store.upsert(_ind(sources={"a"}))
            assert store.pending_count == 1
            # Durable even though the hot write failed
            assert store.get(_ind().key) is not None

            # The next merge reads warm, not the stale hot entry
            store.upsert(_ind(sources={"b"}))
            assert store.get(_ind().key).sources == {"a", "b"}

            hot.broken = False
            assert store.flush_pending() == 1
            assert store.pending_count == 0
            assert hot.get(_ind().key).sources == {"a", "b"}
        finally:
            store.close()

    def test_hot_remove_failure_leaves_tombstone(self, tmp_path):
        hot = _FlakyHot()
        store = TieredStore(hot, WarmTier(str(tmp_path / "w.db")), ColdArchive(str(tmp_path / "c")))
        key = _ind().key
        try:
            store.upsert(_ind())
            hot.remove_broken = True

            def expire(current):
                updated = current.copy()
                updated.status = IndicatorStatus.EXPIRED
                return updated

            store.update(key, expire)
            assert store.purge_expired() == 1
            # The stale copy is still physically in hot but must not match
            assert key in hot
            assert store.pending_count == 1
            assert store.lookup_realtime(key) is None
            assert store.lookup_many([key]) == {}
            assert store.wait_for_promotions()
            assert store.pending_count == 1

            hot.remove_broken = False
            assert store.flush_pending() == 1
            assert store.pending_count == 0
            assert key not in hot
        finally:
            store.close()

    def test_stale_hot_entry_cleared_by_promotion(self, tmp_path):
        hot = _FlakyHot()
        store = TieredStore(hot, WarmTier(str(tmp_path / "w.db")), ColdArchive(str(tmp_path / "c")))
        key = _ind().key
        try:
            store.upsert(_ind())
            hot.remove_broken = True
            store.remove(key)
            assert store.pending_count == 1

            hot.remove_broken = False
            assert store.lookup_realtime(key) is None
            assert store.wait_for_promotions()
            assert store.pending_count == 0
            assert key not in hot
        finally:
            store.close()

    def test_warm_failure_halts_then_recovers(self, store):
        def broken_upsert(indicator):
            raise sqlite3.OperationalError("disk I/O error")

        store.warm.upsert = broken_upsert
        with pytest.raises(StoreUnavailable):
            store.upsert(_ind())
        assert store.halted

        del store.warm.upsert
        with pytest.raises(StoreUnavailable):
            store.upsert(_ind())

        assert store.recover()
        assert not store.halted
        store.upsert(_ind())
        assert store.get(_ind().key) is not None

    def test_halt_reported_once(self, tmp_path):
        from unittest.mock import MagicMock

        monitor = MagicMock()
        store = TieredStore(
            HotTier(), WarmTier(str(tmp_path / "w.db")), ColdArchive(str(tmp_path / "c")),
            monitor=monitor,
        )
        try:
            store.warm.get = MagicMock(side_effect=sqlite3.OperationalError("locked"))
            for _ in range(2):
                with pytest.raises(StoreUnavailable):
                    store.lookup((IndicatorType.IP, "198.51.100.50"))
            monitor.store_unavailable.assert_called_once()
        finally:
            del store.warm.get
            store.close()


class TestArchive:
    def test_purge_expired_moves_to_cold(self, store):
        store.upsert(_ind("198.51.100.1"))
        store.warm.upsert(_ind("198.51.100.2", status=IndicatorStatus.EXPIRED))
        assert store.purge_expired() == 1
        assert store.warm.count() == 1
        assert [i.value for i in store.cold.iter_indicators()] == ["198.51.100.2"]

    def test_archive_snapshots_old_live_rows(self, store):
        store.upsert(_ind("198.51.100.1", days_old=400))
        store.upsert(_ind("198.51.100.2", days_old=1))
        report = store.archive(before=NOW - timedelta(days=30))
        assert report.copied == 1
        assert report.removed == 0
        # Live rows stay in warm
        assert store.warm.count() == 2
        assert store.cold.count() == 1

    def test_archive_cancelled_before_purge(self, store):
        store.warm.upsert(_ind("198.51.100.2", status=IndicatorStatus.EXPIRED))
        cancel = threading.Event()
        cancel.set()
        report = store.archive(before=NOW, cancel=cancel)
        assert report.cancelled
        assert store.warm.count() == 1
