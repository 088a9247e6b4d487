# Core Module - SQLite Connection Helper
#
# The warm tier (and anything else that persists to SQLite) opens its
# connections through ``connect()`` so that every database runs with:
#
#   - WAL journal mode: the scheduler threads write while detection reads
#   - busy_timeout: writers wait instead of failing with SQLITE_BUSY
#   - foreign_keys: the tag table cascades with its indicator rows

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    ``":memory:"`` is accepted for tests; WAL silently stays off there.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on any exception."""
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
