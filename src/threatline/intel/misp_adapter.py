# Intel Module - MISP-style Event Feed Adapter
#
# Hierarchical event -> attribute payloads:
#
#   {"Event": {"id": "12", "info": "...", "threat_level_id": "1",
#              "Tag": [{"name": "tlp:amber"}],
#              "Attribute": [{"type": "ip-dst", "value": "...", "to_ids": true,
#                             "Tag": [...], "timestamp": "1717200000"}],
#              "Object": [{"Attribute": [...]}]}}
#
# Accepts a single event, a list of events, or a {"response": [...]} wrapper.
# Event tags and threat level propagate to every attribute.  Attributes
# whose to_ids flag is false are skipped unless ``include_non_ids`` is set.

import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..core.config import FeedFormat
from ..core.errors import FetchError
from .adapter import FeedAdapter, ParseOutcome, parse_tags
from .models import IndicatorType

# MISP attribute type -> our type
_MISP_TYPE_MAP: Dict[str, IndicatorType] = {
    "ip-dst": IndicatorType.IP,
    "ip-src": IndicatorType.IP,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "url": IndicatorType.URL,
    "uri": IndicatorType.URL,
    "md5": IndicatorType.MD5,
    "sha1": IndicatorType.SHA1,
    "sha256": IndicatorType.SHA256,
    "regkey": IndicatorType.REGISTRY_KEY,
    "filename": IndicatorType.PROCESS_NAME,
    "process-name": IndicatorType.PROCESS_NAME,
}

# threat_level_id -> confidence (4 = undefined -> feed default)
_THREAT_LEVEL_CONFIDENCE: Dict[str, float] = {
    "1": 0.9,
    "2": 0.7,
    "3": 0.5,
}


def _resolve_type(misp_type: str, value: str) -> Optional[Tuple[IndicatorType, str]]:
    """Map a (possibly composite ``a|b``) MISP type to one typed value."""
    if "|" in misp_type:
        parts = misp_type.split("|")
        values = value.split("|")
        if len(parts) != len(values):
            return None
        components = dict(zip(parts, values))
        # Most specific component wins: hashes, then network values
        for preferred in ("sha256", "sha1", "md5", "ip-dst", "ip-src", "domain", "hostname"):
            if preferred in components:
                return _MISP_TYPE_MAP[preferred], components[preferred]
        return None
    mapped = _MISP_TYPE_MAP.get(misp_type)
    if mapped is None:
        return None
    return mapped, value


class MispFeedAdapter(FeedAdapter):
    """MISP-style event feed adapter."""

    format = FeedFormat.MISP

    def _records(self) -> Iterator[Dict[str, Any]]:
        text = self._retrieve()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchError(f"{self.name}: payload is not JSON: {exc}", feed=self.name) from exc

        include_non_ids = bool(self.source.options.get("include_non_ids", False))
        for event in _events(payload):
            event_tags = parse_tags(event.get("Tag"))
            event_ctx = {
                "event_id": event.get("id") or event.get("uuid"),
                "event_info": event.get("info"),
                "threat_level_id": str(event.get("threat_level_id", "")) or None,
            }
            for attr in _attributes(event):
                if not include_non_ids and not _truthy(attr.get("to_ids", True)):
                    continue
                yield {"attribute": attr, "event_tags": event_tags, "event": event_ctx}

    def parse(self, raw: Dict[str, Any]) -> ParseOutcome:
        attr = raw.get("attribute") or {}
        misp_type = str(attr.get("type", "")).strip()
        value = str(attr.get("value", "")).strip()
        if not misp_type or not value:
            return ParseOutcome.failure("attribute without type or value", raw)

        resolved = _resolve_type(misp_type, value)
        if resolved is None:
            return ParseOutcome.failure(f"unsupported MISP attribute type {misp_type!r}", raw)
        ioc_type, ioc_value = resolved

        event = raw.get("event") or {}
        tags = list(raw.get("event_tags") or []) + parse_tags(attr.get("Tag"))
        confidence = _THREAT_LEVEL_CONFIDENCE.get(event.get("threat_level_id") or "")
        context = {"misp": {k: v for k, v in event.items() if v}}
        if attr.get("category"):
            context["misp"]["category"] = attr["category"]

        ts = attr.get("first_seen") or attr.get("timestamp")
        try:
            indicator = self._build_indicator(
                ioc_type,
                ioc_value,
                confidence=confidence,
                first_seen=ts,
                last_seen=attr.get("last_seen") or attr.get("timestamp"),
                tags=tags,
                context=context,
            )
        except ValueError as exc:
            return ParseOutcome.failure(str(exc), raw)
        return ParseOutcome.success(indicator)


def _events(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict) and "response" in payload:
        payload = payload["response"]
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return []
    events = []
    for item in payload:
        if isinstance(item, dict):
            events.append(item.get("Event", item))
    return events


def _attributes(event: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for attr in event.get("Attribute") or []:
        if isinstance(attr, dict):
            yield attr
    for obj in event.get("Object") or []:
        for attr in (obj or {}).get("Attribute") or []:
            if isinstance(attr, dict):
                yield attr


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)
