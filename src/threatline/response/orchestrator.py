# Response Module - Response Orchestrator
#
# Per Detection:
#
#   new -> evaluated -> auto_mitigated | escalated | suppressed
#
#   severity >= auto_threshold      playbook mitigation (escalate when the
#                                   playbook has nothing to act on)
#   floor <= severity < threshold   human queue
#   severity < floor / whitelisted  suppressed
#
# Every mitigation attempt leaves an AuditEntry (success | retry | failure)
# in memory and in the structured audit log.  Retries follow the response
# RetryPolicy; exhausting it escalates with reason ``mitigation_failed``.
# A (action, target) pair that was already applied is never executed again.

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Set, Tuple

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import ResponseSettings
from ..core.errors import MitigationFailure
from ..intel.models import Detection, IndicatorStatus, utcnow
from ..intel.whitelist import Whitelist
from ..storage.hot import KeyLockTable
from .executor import ActionExecutor, ActionType
from .playbook import PlannedAction, plan

if TYPE_CHECKING:
    from ..monitor.quality import QualityMonitor

logger = logging.getLogger(__name__)

# Escalation reasons
REASON_BELOW_AUTO_THRESHOLD = "below_auto_threshold"
REASON_NO_PLAYBOOK_ACTION = "no_playbook_action"
REASON_MITIGATION_FAILED = "mitigation_failed"


class ResponseState(str, Enum):
    NEW = "new"
    EVALUATED = "evaluated"
    AUTO_MITIGATED = "auto_mitigated"
    ESCALATED = "escalated"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class AuditEntry:
    """One mitigation attempt."""

    action: str
    target: str
    timestamp: str
    outcome: str  # success | retry | failure
    attempt: int
    detail: str = ""
    detection_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "target": self.target,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "detail": self.detail,
            "detection_id": self.detection_id,
        }


@dataclass
class ResponseRecord:
    """What the orchestrator did with one detection."""

    detection: Detection
    state: ResponseState = ResponseState.NEW
    history: List[ResponseState] = field(default_factory=lambda: [ResponseState.NEW])
    action: Optional[str] = None
    target: Optional[str] = None
    reason: str = ""
    entries: List[AuditEntry] = field(default_factory=list)

    def transition(self, state: ResponseState, reason: str = "") -> None:
        self.state = state
        self.history.append(state)
        if reason:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection_id": self.detection.detection_id,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "action": self.action,
            "target": self.target,
            "reason": self.reason,
            "severity": round(self.detection.severity, 4),
            "entries": [e.to_dict() for e in self.entries],
        }


class ResponseOrchestrator:
    """Decide and carry out the response to each Detection.

    Args:
        executor: Performs block / isolate / notify actions.
        whitelist: Whitelisted values are always suppressed.
        settings: Thresholds, retry policy and notification channel.
        monitor: Quality monitor (response counters, mitigation_failed).
        audit: Structured audit logger (process-wide one by default).
        history: How many ResponseRecords ``recent()`` keeps.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        whitelist: Whitelist,
        settings: Optional[ResponseSettings] = None,
        monitor: Optional["QualityMonitor"] = None,
        audit: Optional[AuditLogger] = None,
        history: int = 1000,
    ):
        self._executor = executor
        self._whitelist = whitelist
        self._monitor = monitor
        self._audit = audit or get_audit_logger()
        self._lock = threading.RLock()
        self._key_locks = KeyLockTable(stripes=64)
        self._applied: Set[Tuple[str, str]] = set()
        self._escalations: Deque[ResponseRecord] = deque()
        self._recent: Deque[ResponseRecord] = deque(maxlen=history)
        self._audit_trail: Deque[AuditEntry] = deque(maxlen=history * 4)
        self.configure(settings or ResponseSettings())

    def configure(self, settings: ResponseSettings) -> None:
        self.settings = settings
        self.auto_threshold = settings.auto_threshold
        self.floor = settings.floor
        self._policy = settings.retry_policy()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, detection: Detection) -> ResponseRecord:
        """Evaluate one detection and carry the decision out."""
        record = ResponseRecord(detection=detection)
        record.transition(ResponseState.EVALUATED)
        severity = detection.severity

        if self._is_whitelisted(detection):
            self._suppress(record, "whitelisted")
        elif severity < self.floor:
            self._suppress(record, "below_floor")
        elif severity < self.auto_threshold:
            self._escalate(record, REASON_BELOW_AUTO_THRESHOLD)
        else:
            planned = plan(detection)
            if planned is None:
                self._escalate(record, REASON_NO_PLAYBOOK_ACTION)
            else:
                self._mitigate(record, planned)

        with self._lock:
            self._recent.append(record)
        if self._monitor is not None:
            self._monitor.record_response(record.state.value)
        return record

    __call__ = handle

    def _is_whitelisted(self, detection: Detection) -> bool:
        if detection.indicator.status == IndicatorStatus.WHITELISTED:
            return True
        return self._whitelist.contains_key(detection.indicator.key)

    # ------------------------------------------------------------------
    # Mitigation
    # ------------------------------------------------------------------

    def _mitigate(self, record: ResponseRecord, planned: PlannedAction) -> None:
        record.action, record.target = planned.key
        with self._key_locks.lock_for(planned.key):
            with self._lock:
                already = planned.key in self._applied
            if already:
                logger.info(
                    "Mitigation %s on %s already applied, skipping",
                    planned.action.value, planned.target,
                )
                record.transition(ResponseState.AUTO_MITIGATED, "already_applied")
                return

            attempts = 0

            def attempt_once() -> None:
                nonlocal attempts
                attempts += 1
                try:
                    outcome = self._executor.execute(planned.action, planned.target, planned.parameters)
                except Exception as exc:
                    logger.error("Executor raised on %s %s: %s", planned.action.value, planned.target, exc)
                    raise MitigationFailure(str(exc), planned.action.value, planned.target) from exc
                if not outcome.success:
                    raise MitigationFailure(outcome.detail, planned.action.value, planned.target)
                self._record_attempt(record, planned, "success", attempts, outcome.detail)

            def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
                self._record_attempt(record, planned, "retry", attempt, str(exc))
                logger.warning(
                    "Mitigation %s on %s failed (attempt %d/%d), retrying in %.1fs",
                    planned.action.value, planned.target, attempt, self._policy.max_attempts, delay,
                )

            try:
                self._policy.call(
                    attempt_once,
                    retry_on=(MitigationFailure,),
                    on_retry=on_retry,
                    sleep=lambda s: time.sleep(s),
                )
            except MitigationFailure as exc:
                self._record_attempt(record, planned, "failure", attempts, str(exc))
                if self._monitor is not None:
                    self._monitor.mitigation_failed(planned.action.value, planned.target, str(exc))
                self._escalate(record, REASON_MITIGATION_FAILED)
                return

            with self._lock:
                self._applied.add(planned.key)
        record.transition(ResponseState.AUTO_MITIGATED)
        logger.info(
            "Auto-mitigated detection %s: %s on %s",
            record.detection.detection_id[:8], planned.action.value, planned.target,
        )

    def _record_attempt(
        self,
        record: ResponseRecord,
        planned: PlannedAction,
        outcome: str,
        attempt: int,
        detail: str,
    ) -> None:
        entry = AuditEntry(
            action=planned.action.value,
            target=planned.target,
            timestamp=utcnow().isoformat(),
            outcome=outcome,
            attempt=attempt,
            detail=detail,
            detection_id=record.detection.detection_id,
        )
        record.entries.append(entry)
        with self._lock:
            self._audit_trail.append(entry)
        self._audit.log_mitigation(
            entry.action,
            entry.target,
            entry.outcome,
            entry.attempt,
            detail=entry.detail,
            detection_id=entry.detection_id,
        )

    # ------------------------------------------------------------------
    # Escalation / suppression
    # ------------------------------------------------------------------

    def _escalate(self, record: ResponseRecord, reason: str) -> None:
        record.transition(ResponseState.ESCALATED, reason)
        with self._lock:
            self._escalations.append(record)
        d = record.detection
        severity = EventSeverity.CRITICAL if reason == REASON_MITIGATION_FAILED else EventSeverity.ALERT
        self._audit.log_event(
            EventType.ESCALATION,
            severity,
            f"Detection {d.detection_id[:8]} escalated: {reason}",
            details={
                "detection_id": d.detection_id,
                "reason": reason,
                "severity": round(d.severity, 4),
                "indicator_type": d.indicator.type.value,
                "indicator_value": d.indicator.value,
                "action": record.action,
                "target": record.target,
            },
        )
        logger.info("Escalated detection %s (%s)", d.detection_id[:8], reason)
        self._notify(record)

    def _suppress(self, record: ResponseRecord, reason: str) -> None:
        record.transition(ResponseState.SUPPRESSED, reason)
        d = record.detection
        self._audit.log_event(
            EventType.SUPPRESSION,
            EventSeverity.INFO,
            f"Detection {d.detection_id[:8]} suppressed: {reason}",
            details={
                "detection_id": d.detection_id,
                "reason": reason,
                "severity": round(d.severity, 4),
                "indicator_type": d.indicator.type.value,
                "indicator_value": d.indicator.value,
            },
        )
        logger.debug("Suppressed detection %s (%s)", d.detection_id[:8], reason)

    def _notify(self, record: ResponseRecord) -> None:
        channel = self.settings.notify_channel
        if not channel:
            return
        d = record.detection
        params = {
            "detection_id": d.detection_id,
            "reason": record.reason,
            "severity": round(d.severity, 4),
            "severity_level": d.severity_level.value,
            "indicator_type": d.indicator.type.value,
            "indicator_value": d.indicator.value,
        }

        def send() -> None:
            outcome = self._executor.execute(ActionType.NOTIFY_CHANNEL, channel, params)
            if not outcome.success:
                raise MitigationFailure(outcome.detail, ActionType.NOTIFY_CHANNEL.value, channel)

        try:
            self._policy.call(send, retry_on=(MitigationFailure,), sleep=lambda s: time.sleep(s))
        except MitigationFailure as exc:
            logger.error("Escalation notice to %s failed: %s", channel, exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def escalations(self) -> List[ResponseRecord]:
        """Pending human-review queue, oldest first."""
        with self._lock:
            return list(self._escalations)

    def pop_escalation(self) -> Optional[ResponseRecord]:
        with self._lock:
            return self._escalations.popleft() if self._escalations else None

    def audit_trail(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit_trail)

    def recent(self) -> List[ResponseRecord]:
        with self._lock:
            return list(self._recent)

    def is_applied(self, action: str, target: str) -> bool:
        with self._lock:
            return (ActionType(action).value, target) in self._applied

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            counts: Dict[str, int] = {}
            for r in self._recent:
                counts[r.state.value] = counts.get(r.state.value, 0) + 1
            return {
                "applied": len(self._applied),
                "pending_escalations": len(self._escalations),
                "states": counts,
            }
