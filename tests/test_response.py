"""
Tests for Response Module - playbook, executors and the orchestrator.

Executors are in-memory or have httpx mocked; retry sleeps are patched.
Covers: threshold routing, suppression, idempotent mitigation, retry
with an audit entry per attempt, failure escalation, notifications and
concurrent handling of the same detection target.
"""

import threading
from unittest.mock import MagicMock, patch

import httpx
import pytest

from threatline.core.audit_log import EventType
from threatline.core.config import ResponseSettings
from threatline.intel.models import Detection, DetectionMethod, Indicator, IndicatorStatus, IndicatorType
from threatline.intel.whitelist import Whitelist, WhitelistEntry
from threatline.response import (
    ActionType,
    HttpActionExecutor,
    InMemoryActionExecutor,
    ResponseOrchestrator,
    ResponseState,
    event_host,
    plan,
)


# ===================================================================
# Fixtures & helpers
# ===================================================================

def _detection(
    ioc_type=IndicatorType.IP,
    value="198.51.100.7",
    severity=0.9,
    event=None,
    status=IndicatorStatus.ACTIVE,
) -> Detection:
    ind = Indicator(type=ioc_type, value=value, confidence=0.9, sources={"feed-a"}, status=status)
    return Detection(
        indicator=ind,
        event=event if event is not None else {"src_ip": value},
        matched_value=value,
        severity=severity,
        method=DetectionMethod.REALTIME,
    )


def _mock_response(status_code=200, json_data=None):
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    if json_data is None:
        resp.json.side_effect = ValueError("no body")
    else:
        resp.json.return_value = json_data
    return resp


@pytest.fixture
def executor():
    return InMemoryActionExecutor()


@pytest.fixture
def whitelist():
    return Whitelist()


@pytest.fixture
def orchestrator(executor, whitelist, audit):
    return ResponseOrchestrator(executor, whitelist, ResponseSettings(), audit=audit)


# ===================================================================
# Playbook
# ===================================================================

class TestPlaybook:
    def test_network_indicators_blocked(self):
        planned = plan(_detection(IndicatorType.DOMAIN, "evil.test"))
        assert planned.action == ActionType.BLOCK_NETWORK
        assert planned.target == "evil.test"
        assert planned.key == ("block-network", "evil.test")

    def test_host_artifacts_isolate_reporting_host(self):
        d = _detection(IndicatorType.SHA256, "f" * 64, event={"sha256": "f" * 64, "hostname": "WS-01"})
        planned = plan(d)
        assert planned.action == ActionType.ISOLATE_HOST
        assert planned.target == "ws-01"
        assert planned.parameters["indicator_value"] == "f" * 64

    def test_host_artifact_without_host(self):
        assert plan(_detection(IndicatorType.PROCESS_NAME, "evil.exe", event={"process_name": "evil.exe"})) is None

    def test_event_host_nested(self):
        assert event_host({"host": {"name": "Srv-9"}}) == "srv-9"
        assert event_host({"agent_id": "a-17"}) == "a-17"
        assert event_host({"user": "bob"}) is None


# ===================================================================
# Executors
# ===================================================================

class TestInMemoryExecutor:
    def test_scripted_failures(self):
        ex = InMemoryActionExecutor(fail_next=1)
        assert not ex.execute(ActionType.BLOCK_NETWORK, "198.51.100.7").success
        assert ex.execute(ActionType.BLOCK_NETWORK, "198.51.100.7").success
        assert ex.applied == {("block-network", "198.51.100.7")}
        assert len(ex.calls) == 2

    def test_notifications_recorded(self):
        ex = InMemoryActionExecutor()
        ex.execute(ActionType.NOTIFY_CHANNEL, "#soc", {"reason": "x"})
        assert ex.notifications == [{"channel": "#soc", "reason": "x"}]
        assert ex.applied == set()


class TestHttpActionExecutor:
    @patch("threatline.response.executor.httpx.request")
    def test_success(self, mock_req):
        mock_req.return_value = _mock_response(200, {"detail": "rule 42"})
        outcome = HttpActionExecutor("https://soar.test/actions").execute(
            ActionType.BLOCK_NETWORK, "198.51.100.7", {"severity": 0.9}
        )
        assert outcome.success
        assert outcome.detail == "rule 42"
        body = mock_req.call_args.kwargs["json"]
        assert body == {"action": "block-network", "target": "198.51.100.7", "parameters": {"severity": 0.9}}

    @patch("threatline.response.executor.httpx.request")
    def test_http_error_status(self, mock_req):
        mock_req.return_value = _mock_response(502)
        outcome = HttpActionExecutor("https://soar.test/actions").execute(ActionType.ISOLATE_HOST, "ws-01")
        assert not outcome.success
        assert outcome.detail == "HTTP 502"

    @patch("threatline.response.executor.httpx.request")
    def test_rejected_in_body(self, mock_req):
        mock_req.return_value = _mock_response(200, {"success": False, "detail": "host offline"})
        outcome = HttpActionExecutor("https://soar.test/actions").execute(ActionType.ISOLATE_HOST, "ws-01")
        assert not outcome.success
        assert outcome.detail == "host offline"

    @patch("threatline.response.executor.httpx.request")
    def test_timeout(self, mock_req):
        mock_req.side_effect = httpx.ReadTimeout("slow")
        outcome = HttpActionExecutor("https://soar.test/actions", timeout=3).execute(
            ActionType.BLOCK_NETWORK, "198.51.100.7"
        )
        assert not outcome.success
        assert "timeout" in outcome.detail

    @patch("threatline.response.executor.httpx.request")
    def test_empty_body_is_success(self, mock_req):
        mock_req.return_value = _mock_response(204)
        assert HttpActionExecutor("https://soar.test/actions").execute(
            ActionType.BLOCK_NETWORK, "198.51.100.7"
        ).success


# ===================================================================
# Orchestrator routing
# ===================================================================

class TestRouting:
    def test_auto_mitigates_above_threshold(self, orchestrator, executor):
        record = orchestrator.handle(_detection(severity=0.85))
        assert record.state == ResponseState.AUTO_MITIGATED
        assert record.history == [ResponseState.NEW, ResponseState.EVALUATED, ResponseState.AUTO_MITIGATED]
        assert executor.applied == {("block-network", "198.51.100.7")}
        assert [e.outcome for e in record.entries] == ["success"]

    def test_threshold_is_inclusive(self, orchestrator):
        assert orchestrator.handle(_detection(severity=0.8)).state == ResponseState.AUTO_MITIGATED

    def test_escalates_between_floor_and_threshold(self, orchestrator, executor):
        record = orchestrator.handle(_detection(severity=0.5))
        assert record.state == ResponseState.ESCALATED
        assert record.reason == "below_auto_threshold"
        assert executor.calls == []
        assert orchestrator.escalations() == [record]

    def test_suppressed_below_floor(self, orchestrator, audit):
        record = orchestrator.handle(_detection(severity=0.1))
        assert record.state == ResponseState.SUPPRESSED
        assert record.reason == "below_floor"
        assert audit.query_events([EventType.SUPPRESSION])

    def test_whitelisted_suppressed_regardless_of_severity(self, orchestrator, whitelist, executor):
        whitelist.add(WhitelistEntry.create("ip", "198.51.100.7"))
        record = orchestrator.handle(_detection(severity=1.0))
        assert record.state == ResponseState.SUPPRESSED
        assert record.reason == "whitelisted"
        assert executor.calls == []

    def test_whitelisted_status_suppressed(self, orchestrator):
        record = orchestrator.handle(_detection(severity=1.0, status=IndicatorStatus.WHITELISTED))
        assert record.state == ResponseState.SUPPRESSED

    def test_no_playbook_action_escalates(self, orchestrator):
        d = _detection(IndicatorType.PROCESS_NAME, "evil.exe", severity=0.95, event={"process_name": "evil.exe"})
        record = orchestrator.handle(d)
        assert record.state == ResponseState.ESCALATED
        assert record.reason == "no_playbook_action"

    def test_reconfigure_thresholds(self, orchestrator):
        orchestrator.configure(ResponseSettings(auto_threshold=0.95, floor=0.2))
        assert orchestrator.handle(_detection(severity=0.9)).state == ResponseState.ESCALATED

    def test_monitor_counts_states(self, executor, whitelist, audit):
        monitor = MagicMock()
        orch = ResponseOrchestrator(executor, whitelist, monitor=monitor, audit=audit)
        orch.handle(_detection(severity=0.1))
        monitor.record_response.assert_called_once_with("suppressed")


# ===================================================================
# Retries, idempotence, failure
# ===================================================================

class TestMitigation:
    @patch("threatline.response.orchestrator.time.sleep")
    def test_transient_failures_retried(self, mock_sleep, whitelist, audit):
        executor = InMemoryActionExecutor(fail_next=2)
        orch = ResponseOrchestrator(executor, whitelist, audit=audit)
        record = orch.handle(_detection(severity=0.9))

        assert record.state == ResponseState.AUTO_MITIGATED
        assert [(e.outcome, e.attempt) for e in record.entries] == [("retry", 1), ("retry", 2), ("success", 3)]
        assert executor.applied == {("block-network", "198.51.100.7")}
        assert len(executor.calls) == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

        logged = audit.query_events([EventType.MITIGATION_ATTEMPT])
        assert [r["details"]["outcome"] for r in logged] == ["retry", "retry", "success"]

    @patch("threatline.response.orchestrator.time.sleep")
    def test_exhausted_retries_escalate(self, mock_sleep, whitelist, audit):
        executor = InMemoryActionExecutor(fail_next=10)
        monitor = MagicMock()
        orch = ResponseOrchestrator(executor, whitelist, monitor=monitor, audit=audit)
        record = orch.handle(_detection(severity=0.9))

        assert record.state == ResponseState.ESCALATED
        assert record.reason == "mitigation_failed"
        assert [e.outcome for e in record.entries] == ["retry", "retry", "failure"]
        assert executor.applied == set()
        assert not orch.is_applied("block-network", "198.51.100.7")
        monitor.mitigation_failed.assert_called_once()
        escalations = audit.query_events([EventType.ESCALATION])
        assert escalations[-1]["severity"] == "critical"

    def test_duplicate_target_not_reapplied(self, orchestrator, executor, audit):
        first = orchestrator.handle(_detection(severity=0.9))
        second = orchestrator.handle(_detection(severity=0.95))

        assert first.state == second.state == ResponseState.AUTO_MITIGATED
        assert second.reason == "already_applied"
        assert second.entries == []
        assert len(executor.calls) == 1
        assert len(audit.query_events([EventType.MITIGATION_ATTEMPT])) == 1

    def test_concurrent_same_target_applied_once(self, orchestrator, executor):
        detections = [_detection(severity=0.9) for _ in range(8)]
        threads = [threading.Thread(target=orchestrator.handle, args=(d,)) for d in detections]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert executor.calls == [("block-network", "198.51.100.7")]
        assert orchestrator.stats()["states"] == {"auto_mitigated": 8}

    def test_executor_exception_treated_as_failure(self, whitelist, audit):
        executor = MagicMock()
        executor.execute.side_effect = RuntimeError("driver crashed")
        settings = ResponseSettings(max_attempts=1)
        orch = ResponseOrchestrator(executor, whitelist, settings, audit=audit)
        record = orch.handle(_detection(severity=0.9))
        assert record.state == ResponseState.ESCALATED
        assert record.entries[0].outcome == "failure"
        assert "driver crashed" in record.entries[0].detail


# ===================================================================
# Escalation queue & notifications
# ===================================================================

class TestEscalation:
    def test_notify_channel(self, executor, whitelist, audit):
        orch = ResponseOrchestrator(executor, whitelist, ResponseSettings(notify_channel="#soc"), audit=audit)
        orch.handle(_detection(severity=0.5))
        assert len(executor.notifications) == 1
        note = executor.notifications[0]
        assert note["channel"] == "#soc"
        assert note["reason"] == "below_auto_threshold"
        assert note["severity_level"] == "medium"

    @patch("threatline.response.orchestrator.time.sleep")
    def test_failed_notification_does_not_raise(self, mock_sleep, whitelist, audit):
        executor = InMemoryActionExecutor(fail_next=10)
        orch = ResponseOrchestrator(executor, whitelist, ResponseSettings(notify_channel="#soc"), audit=audit)
        record = orch.handle(_detection(severity=0.5))
        assert record.state == ResponseState.ESCALATED

    def test_pop_escalation_fifo(self, orchestrator):
        a = orchestrator.handle(_detection(value="198.51.100.1", severity=0.5))
        b = orchestrator.handle(_detection(value="198.51.100.2", severity=0.5))
        assert orchestrator.pop_escalation() is a
        assert orchestrator.pop_escalation() is b
        assert orchestrator.pop_escalation() is None

    def test_record_serializes(self, orchestrator):
        data = orchestrator.handle(_detection(severity=0.9)).to_dict()
        assert data["state"] == "auto_mitigated"
        assert data["history"] == ["new", "evaluated", "auto_mitigated"]
        assert data["entries"][0]["action"] == "block-network"
