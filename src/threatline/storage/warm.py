# Storage Module - Warm Tier (SQLite)
#
# Durable, queryable store of every non-archived indicator.  The warm write
# is the durability point of an upsert.  Indexed for:
#   - point lookup by (type, value)       UNIQUE constraint
#   - time-window queries                 idx_indicators_last_seen
#   - status scans (age sweep, archival)  idx_indicators_status
#   - tag queries                         indicator_tags table
#
# Thread-safe via a reentrant lock around the single shared connection.

import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..core.db import connect as db_connect
from ..core.db import transaction
from ..intel.models import Indicator, IndicatorStatus, IndicatorType, ensure_utc, utcnow

Key = Tuple[IndicatorType, str]

DEFAULT_DB_PATH = "data/warm.db"
_IN_CHUNK = 400  # stay well below SQLITE_MAX_VARIABLE_NUMBER


def _ts(dt: datetime) -> str:
    """Fixed-width UTC text so that string order equals time order."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class WarmTier:
    """SQLite-backed indicator store."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS indicators (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    ioc_type    TEXT    NOT NULL,
                    value       TEXT    NOT NULL,
                    confidence  REAL    NOT NULL,
                    sources     TEXT    NOT NULL DEFAULT '[]',
                    first_seen  TEXT    NOT NULL,
                    last_seen   TEXT    NOT NULL,
                    tags        TEXT    NOT NULL DEFAULT '[]',
                    context     TEXT    NOT NULL DEFAULT '{}',
                    status      TEXT    NOT NULL,
                    updated_at  TEXT    NOT NULL,
                    UNIQUE (ioc_type, value)
                );

                CREATE INDEX IF NOT EXISTS idx_indicators_last_seen
                    ON indicators(last_seen);
                CREATE INDEX IF NOT EXISTS idx_indicators_status
                    ON indicators(status);

                CREATE TABLE IF NOT EXISTS indicator_tags (
                    indicator_id INTEGER NOT NULL
                        REFERENCES indicators(id) ON DELETE CASCADE,
                    tag          TEXT    NOT NULL,
                    PRIMARY KEY (indicator_id, tag)
                );

                CREATE INDEX IF NOT EXISTS idx_indicator_tags_tag
                    ON indicator_tags(tag);

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            # executescript resets connection state
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Indicator:
        return Indicator(
            type=IndicatorType(row["ioc_type"]),
            value=row["value"],
            confidence=row["confidence"],
            sources=set(json.loads(row["sources"])),
            first_seen=datetime.fromisoformat(row["first_seen"]),
            last_seen=datetime.fromisoformat(row["last_seen"]),
            tags=set(json.loads(row["tags"])),
            context=json.loads(row["context"]),
            status=IndicatorStatus(row["status"]),
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def upsert(self, indicator: Indicator) -> None:
        """Insert or replace the row for ``indicator.key``."""
        params = (
            indicator.type.value,
            indicator.value,
            indicator.confidence,
            json.dumps(sorted(indicator.sources)),
            _ts(indicator.first_seen),
            _ts(indicator.last_seen),
            json.dumps(sorted(indicator.tags)),
            json.dumps(indicator.context, default=str),
            indicator.status.value,
            _ts(utcnow()),
        )
        with self._lock, transaction(self._conn):
            self._conn.execute(
                """
                INSERT INTO indicators
                    (ioc_type, value, confidence, sources, first_seen,
                     last_seen, tags, context, status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (ioc_type, value) DO UPDATE SET
                    confidence = excluded.confidence,
                    sources    = excluded.sources,
                    first_seen = excluded.first_seen,
                    last_seen  = excluded.last_seen,
                    tags       = excluded.tags,
                    context    = excluded.context,
                    status     = excluded.status,
                    updated_at = excluded.updated_at
                """,
                params,
            )
            row = self._conn.execute(
                "SELECT id FROM indicators WHERE ioc_type = ? AND value = ?",
                (indicator.type.value, indicator.value),
            ).fetchone()
            self._conn.execute("DELETE FROM indicator_tags WHERE indicator_id = ?", (row["id"],))
            self._conn.executemany(
                "INSERT INTO indicator_tags (indicator_id, tag) VALUES (?, ?)",
                [(row["id"], tag) for tag in sorted(indicator.tags)],
            )

    def delete(self, key: Key) -> bool:
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                "DELETE FROM indicators WHERE ioc_type = ? AND value = ?",
                (key[0].value, key[1]),
            )
            return cursor.rowcount > 0

    def delete_if_status(self, key: Key, status: IndicatorStatus) -> bool:
        """Delete the row only while it still has ``status``."""
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                "DELETE FROM indicators WHERE ioc_type = ? AND value = ? AND status = ?",
                (key[0].value, key[1], status.value),
            )
            return cursor.rowcount > 0

    def purge_retention(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Remove expired rows last seen more than ``retention_days`` ago."""
        cutoff = _ts((now or utcnow()) - timedelta(days=retention_days))
        with self._lock, transaction(self._conn):
            cursor = self._conn.execute(
                "DELETE FROM indicators WHERE status = ? AND last_seen < ?",
                (IndicatorStatus.EXPIRED.value, cutoff),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, key: Key) -> Optional[Indicator]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM indicators WHERE ioc_type = ? AND value = ?",
                (key[0].value, key[1]),
            ).fetchone()
        return self._from_row(row) if row else None

    def get_many(self, keys: Iterable[Key]) -> Dict[Key, Indicator]:
        """Bulk point lookup, grouped by type and chunked."""
        by_type: Dict[IndicatorType, List[str]] = {}
        for t, v in set(keys):
            by_type.setdefault(t, []).append(v)

        found: Dict[Key, Indicator] = {}
        with self._lock:
            for ioc_type, values in by_type.items():
                for i in range(0, len(values), _IN_CHUNK):
                    chunk = values[i:i + _IN_CHUNK]
                    marks = ",".join("?" * len(chunk))
                    rows = self._conn.execute(
                        f"SELECT * FROM indicators WHERE ioc_type = ? AND value IN ({marks})",
                        [ioc_type.value, *chunk],
                    ).fetchall()
                    for row in rows:
                        ind = self._from_row(row)
                        found[ind.key] = ind
        return found

    def range_by_last_seen(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[Indicator]:
        clauses: List[str] = []
        params: List[Any] = []
        if start is not None:
            clauses.append("last_seen >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append("last_seen < ?")
            params.append(_ts(end))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM indicators{where} ORDER BY last_seen DESC LIMIT ?", params
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def by_tag(self, tag: str, limit: int = 1000) -> List[Indicator]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT i.* FROM indicators i
                JOIN indicator_tags t ON t.indicator_id = i.id
                WHERE t.tag = ?
                ORDER BY i.last_seen DESC
                LIMIT ?
                """,
                (tag, limit),
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def iter_chunks(
        self,
        chunk_size: int = 500,
        statuses: Optional[Sequence[IndicatorStatus]] = None,
    ) -> Iterator[List[Indicator]]:
        """Walk the table in id order, ``chunk_size`` rows at a time.

        Keyset pagination, so rows updated or deleted between chunks never
        shift the walk.
        """
        last_id = 0
        status_clause = ""
        status_params: List[str] = []
        if statuses:
            status_clause = f" AND status IN ({','.join('?' * len(statuses))})"
            status_params = [s.value for s in statuses]
        while True:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT * FROM indicators WHERE id > ?{status_clause} ORDER BY id LIMIT ?",
                    [last_id, *status_params, chunk_size],
                ).fetchall()
            if not rows:
                return
            last_id = rows[-1]["id"]
            yield [self._from_row(r) for r in rows]

    def select_for_archive(self, before: Optional[datetime]) -> List[Indicator]:
        """Expired rows, plus rows last seen before ``before``."""
        with self._lock:
            if before is None:
                rows = self._conn.execute(
                    "SELECT * FROM indicators WHERE status = ? ORDER BY id",
                    (IndicatorStatus.EXPIRED.value,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM indicators WHERE status = ? OR last_seen < ? ORDER BY id",
                    (IndicatorStatus.EXPIRED.value, _ts(before)),
                ).fetchall()
        return [self._from_row(r) for r in rows]

    def count(self, status: Optional[IndicatorStatus] = None) -> int:
        with self._lock:
            if status is None:
                row = self._conn.execute("SELECT COUNT(*) FROM indicators").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM indicators WHERE status = ?", (status.value,)
                ).fetchone()
        return row[0]

    def ping(self) -> None:
        """Raise sqlite3.Error if the database is unusable."""
        with self._lock:
            self._conn.execute("SELECT 1 FROM indicators LIMIT 1").fetchall()

    def stats(self) -> Dict[str, Any]:
        return {
            "total": self.count(),
            "by_status": {s.value: self.count(s) for s in IndicatorStatus},
            "db_path": self.db_path,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()
