"""Response playbook: which mitigation a detection maps to.

Each entry defines:
  - action:      ActionType to request, or None (always escalate)
  - target:      where the target comes from: "indicator" (the matched
                 value) or "host" (a host named by the event)
  - description: human-readable action description

Network-observable indicators are blocked at the perimeter.  Host
artifacts isolate the host that reported them; without a host in the
event there is nothing to isolate and the detection is escalated.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..intel.models import Detection, IndicatorType
from .executor import ActionType

PLAYBOOK: Dict[IndicatorType, Dict[str, Any]] = {
    # ── Perimeter ─────────────────────────────────────────────────────────
    IndicatorType.IP: {
        "action": ActionType.BLOCK_NETWORK,
        "target": "indicator",
        "description": "Block traffic to and from the address",
    },
    IndicatorType.DOMAIN: {
        "action": ActionType.BLOCK_NETWORK,
        "target": "indicator",
        "description": "Sinkhole / block resolution of the domain",
    },
    IndicatorType.URL: {
        "action": ActionType.BLOCK_NETWORK,
        "target": "indicator",
        "description": "Block the URL at the web proxy",
    },

    # ── Host artifacts ────────────────────────────────────────────────────
    IndicatorType.MD5: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host carrying the file",
    },
    IndicatorType.SHA1: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host carrying the file",
    },
    IndicatorType.SHA256: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host carrying the file",
    },
    IndicatorType.PROCESS_NAME: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host running the process",
    },
    IndicatorType.COMMAND_PATTERN: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host that executed the command",
    },
    IndicatorType.REGISTRY_KEY: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host with the persistence key",
    },
    IndicatorType.BEHAVIORAL_PATTERN: {
        "action": ActionType.ISOLATE_HOST,
        "target": "host",
        "description": "Isolate the host showing the behavior",
    },
}

# Event fields that name the reporting host, in order of preference
HOST_FIELDS = ("host", "hostname", "device", "device_name", "computer_name", "agent_id")


@dataclass(frozen=True)
class PlannedAction:
    action: ActionType
    target: str
    parameters: Dict[str, Any]

    @property
    def key(self):
        return (self.action.value, self.target)


def event_host(event: Mapping[str, Any]) -> Optional[str]:
    """Return the host an event names, if any."""
    for name in HOST_FIELDS:
        value = event.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    host = event.get("host")
    if isinstance(host, Mapping):
        for name in ("name", "hostname", "id"):
            value = host.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
    return None


def plan(detection: Detection) -> Optional[PlannedAction]:
    """Map a detection to its mitigation, or None when it must be escalated."""
    entry = PLAYBOOK.get(detection.indicator.type)
    if entry is None or entry["action"] is None:
        return None
    if entry["target"] == "host":
        target = event_host(detection.event)
        if target is None:
            return None
    else:
        target = detection.indicator.value
    return PlannedAction(
        action=entry["action"],
        target=target,
        parameters={
            "indicator_type": detection.indicator.type.value,
            "indicator_value": detection.indicator.value,
            "detection_id": detection.detection_id,
            "severity": round(detection.severity, 4),
            "reason": entry["description"],
        },
    )
