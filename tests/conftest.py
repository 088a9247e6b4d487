"""
Shared pytest fixtures for the Threatline test suite.

Autouse fixtures below isolate tests from live data:
  - Audit logger -> temp directory (no test events in ./audit_logs)
"""

from datetime import datetime, timezone

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import threatline.core.audit_log as audit_mod

    # Reset the singleton so the next call to get_audit_logger() creates
    # a fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    audit_mod._audit_logger = old_logger


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def audit(tmp_path):
    from threatline.core.audit_log import AuditLogger

    logger = AuditLogger(log_dir=tmp_path / "audit")
    yield logger
    logger.close()


@pytest.fixture
def store(tmp_path):
    """A TieredStore on a temp SQLite file and cold directory."""
    from threatline.storage import ColdArchive, HotTier, TieredStore, WarmTier

    s = TieredStore(
        HotTier(capacity=1000),
        WarmTier(str(tmp_path / "warm.db")),
        ColdArchive(str(tmp_path / "cold")),
    )
    yield s
    s.close()
