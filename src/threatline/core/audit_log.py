# Core Module - Audit Logging
#
# Append-only, structured audit trail for everything an operator may
# need to reconstruct later: mitigations and their retries, escalations,
# suppressions, feed degradation, whitelist changes and config reloads.
#
# Records are JSON lines (structlog JSONRenderer) written to a daily file
# under ``log_dir``.  The module-level ``get_audit_logger()`` accessor is
# the single owner of the process-wide instance; components accept an
# explicit ``AuditLogger`` and only fall back to the accessor.

import json
import logging
import os
import socket
import sys
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of pipeline events recorded in the audit log."""

    # Feeds
    FEED_POLLED = "feed.polled"
    FEED_FAILED = "feed.failed"
    FEED_DEGRADED = "feed.degraded"
    FEED_RECOVERED = "feed.recovered"

    # Indicator lifecycle
    INDICATOR_EXPIRED = "indicator.expired"
    INDICATOR_ARCHIVED = "indicator.archived"
    WHITELIST_ADDED = "whitelist.added"
    WHITELIST_REMOVED = "whitelist.removed"

    # Detection & response
    DETECTION = "detection.emitted"
    MITIGATION_ATTEMPT = "response.mitigation"
    ESCALATION = "response.escalated"
    SUPPRESSION = "response.suppressed"

    # Store
    STORE_UNAVAILABLE = "store.unavailable"
    STORE_RECOVERED = "store.recovered"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"
    CONFIG_RELOADED = "config.reloaded"
    QUALITY_ALERT = "quality.alert"


class EventSeverity(str, Enum):
    """Severity levels for audit events.

    - INFO: routine activity, recorded only
    - INVESTIGATE: something an analyst should look at
    - ALERT: the pipeline took an action (block, isolate)
    - CRITICAL: a human decision or repair is required
    """

    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """Immutable, append-only audit logger.

    Args:
        log_dir: Directory for daily audit files (default: ./audit_logs).
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        # Private stdlib logger so audit records never mix with app logs
        self._stdlib_logger = logging.getLogger(f"threatline.audit.{id(self)}")
        self._stdlib_logger.setLevel(logging.INFO)
        self._stdlib_logger.propagate = False
        self._handler: Optional[logging.FileHandler] = None
        self._handler_day: Optional[str] = None
        self._ensure_handler()

        self.logger = structlog.wrap_logger(
            self._stdlib_logger,
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )

    def _ensure_handler(self) -> None:
        """Roll the file handler over when the UTC day changes."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._handler_day == today:
            return
        if self._handler is not None:
            self._stdlib_logger.removeHandler(self._handler)
            self._handler.close()
        log_file = self.log_dir / f"audit_{today}.log"
        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._stdlib_logger.addHandler(handler)
        self._handler = handler
        self._handler_day = today

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one event.  Returns the generated event ID."""
        event_id = str(uuid4())
        with self._lock:
            self._ensure_handler()
            self.logger.info(
                "pipeline_event",
                event_id=event_id,
                event_type=event_type.value,
                severity=severity.value,
                message=message,
                details=details or {},
                host=_HOST_CONTEXT,
            )
        return event_id

    def log_mitigation(
        self,
        action: str,
        target: str,
        outcome: str,
        attempt: int,
        detail: str = "",
        detection_id: str = "",
    ) -> str:
        """Record one mitigation attempt (success, retry or failure)."""
        severity = EventSeverity.ALERT if outcome == "success" else EventSeverity.INVESTIGATE
        if outcome == "failure":
            severity = EventSeverity.CRITICAL
        return self.log_event(
            EventType.MITIGATION_ATTEMPT,
            severity,
            f"Mitigation {action} on {target}: {outcome} (attempt {attempt})",
            details={
                "action": action,
                "target": target,
                "outcome": outcome,
                "attempt": attempt,
                "detail": detail,
                "detection_id": detection_id,
            },
        )

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        severity: Optional[EventSeverity] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back recent events from the audit files (newest last)."""
        wanted = {t.value for t in event_types} if event_types else None
        results: List[Dict[str, Any]] = []
        with self._lock:
            if self._handler is not None:
                self._handler.flush()
            files = sorted(self.log_dir.glob("audit_*.log"))
        for path in files:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if wanted and record.get("event_type") not in wanted:
                        continue
                    if severity and record.get("severity") != severity.value:
                        continue
                    results.append(record)
        return results[-limit:]

    def close(self) -> None:
        with self._lock:
            if self._handler is not None:
                self._stdlib_logger.removeHandler(self._handler)
                self._handler.close()
                self._handler = None
                self._handler_day = None


_HOST_CONTEXT = {
    "hostname": socket.gethostname(),
    "os_user": os.getenv("USERNAME") or os.getenv("USER"),
    "platform": sys.platform,
}

# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the process-wide audit logger (created on first use)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
