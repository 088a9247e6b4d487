# Response Module - Automated & Human-Gated Response

from .executor import ActionExecutor, ActionOutcome, ActionType, HttpActionExecutor, InMemoryActionExecutor
from .orchestrator import AuditEntry, ResponseOrchestrator, ResponseRecord, ResponseState
from .playbook import PLAYBOOK, PlannedAction, event_host, plan

__all__ = [
    "ActionExecutor",
    "ActionOutcome",
    "ActionType",
    "AuditEntry",
    "HttpActionExecutor",
    "InMemoryActionExecutor",
    "PLAYBOOK",
    "PlannedAction",
    "ResponseOrchestrator",
    "ResponseRecord",
    "ResponseState",
    "event_host",
    "plan",
]
