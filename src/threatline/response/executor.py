# Response Module - Action Executors
#
# The command interface to the outside world:
#
#   execute(action_type, target, parameters) -> ActionOutcome(success, detail)
#
# action_type is one of block-network, isolate-host, notify-channel.
# Executors report failure through the outcome (never fire-and-forget);
# the orchestrator owns retries, so an executor makes exactly one attempt.

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import httpx

from ..core.config import resolve_credential

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    BLOCK_NETWORK = "block-network"
    ISOLATE_HOST = "isolate-host"
    NOTIFY_CHANNEL = "notify-channel"


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    detail: str = ""


class ActionExecutor(ABC):
    """One attempt at one response action."""

    @abstractmethod
    def execute(
        self,
        action_type: ActionType,
        target: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ActionOutcome:
        """Perform the action; never raises for an ordinary failure."""

    def close(self) -> None:
        """Release resources."""


class HttpActionExecutor(ActionExecutor):
    """POST actions to a SOAR / firewall automation endpoint.

    The request body is ``{"action", "target", "parameters"}``; any 2xx
    response counts as success.  A JSON body with ``"success": false`` is
    reported as a failure with its ``detail``.
    """

    def __init__(self, url: str, credentials_ref: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.credentials_ref = credentials_ref
        self.timeout = timeout

    def execute(
        self,
        action_type: ActionType,
        target: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ActionOutcome:
        headers = {"Content-Type": "application/json"}
        token = resolve_credential(self.credentials_ref)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        payload = {
            "action": ActionType(action_type).value,
            "target": target,
            "parameters": dict(parameters or {}),
        }
        try:
            resp = httpx.request(
                "POST",
                self.url,
                headers=headers,
                json=payload,
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            return ActionOutcome(False, f"timeout after {self.timeout}s")
        except httpx.HTTPError as exc:
            return ActionOutcome(False, f"request error: {exc}")

        if resp.status_code >= 400:
            return ActionOutcome(False, f"HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("success") is False:
            return ActionOutcome(False, str(body.get("detail", "rejected by executor")))
        detail = body.get("detail", "ok") if isinstance(body, dict) else "ok"
        return ActionOutcome(True, str(detail))


class InMemoryActionExecutor(ActionExecutor):
    """Set-membership executor for dry runs and tests.

    ``fail_next`` scripts that many consecutive failures before actions
    succeed again.  ``applied`` holds the (action, target) pairs in effect
    and ``calls`` every attempt in order.
    """

    def __init__(self, fail_next: int = 0, fail_detail: str = "simulated failure"):
        self._lock = threading.Lock()
        self.fail_next = fail_next
        self.fail_detail = fail_detail
        self.applied: Set[Tuple[str, str]] = set()
        self.notifications: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str]] = []

    def execute(
        self,
        action_type: ActionType,
        target: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> ActionOutcome:
        action = ActionType(action_type)
        with self._lock:
            self.calls.append((action.value, target))
            if self.fail_next > 0:
                self.fail_next -= 1
                return ActionOutcome(False, self.fail_detail)
            if action == ActionType.NOTIFY_CHANNEL:
                self.notifications.append({"channel": target, **dict(parameters or {})})
            else:
                self.applied.add((action.value, target))
        logger.debug("In-memory %s on %s", action.value, target)
        return ActionOutcome(True, "applied")
