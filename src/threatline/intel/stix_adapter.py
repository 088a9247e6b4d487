# Intel Module - STIX Pattern Feed Adapter
#
# Reads STIX 2.x bundles (or TAXII envelopes) and extracts the equality
# comparisons of each indicator's pattern, e.g.
#
#   [ipv4-addr:value = '198.51.100.7' OR domain-name:value = 'evil.test']
#
# Each comparison becomes one raw record, so a compound pattern yields
# several indicators that share the object's confidence, labels and
# validity window.

import json
import re
from typing import Any, Dict, Iterator, List, Optional

from ..core.config import FeedFormat
from ..core.errors import FetchError
from .adapter import FeedAdapter, ParseOutcome, parse_tags
from .models import IndicatorType

# object-path = 'literal'   (other operators are not indicator values)
_COMPARISON_RE = re.compile(
    r"(?P<path>[a-z0-9-]+:[A-Za-z0-9_.'\-]+)\s*=\s*'(?P<value>(?:[^'\\]|\\.)*)'"
)

_PATH_MAP: Dict[str, IndicatorType] = {
    "ipv4-addr:value": IndicatorType.IP,
    "ipv6-addr:value": IndicatorType.IP,
    "domain-name:value": IndicatorType.DOMAIN,
    "url:value": IndicatorType.URL,
    "file:hashes.md5": IndicatorType.MD5,
    "file:hashes.sha-1": IndicatorType.SHA1,
    "file:hashes.sha1": IndicatorType.SHA1,
    "file:hashes.sha-256": IndicatorType.SHA256,
    "file:hashes.sha256": IndicatorType.SHA256,
    "windows-registry-key:key": IndicatorType.REGISTRY_KEY,
    "process:name": IndicatorType.PROCESS_NAME,
    "process:command_line": IndicatorType.COMMAND_PATTERN,
}


def extract_comparisons(pattern: str) -> List[Dict[str, str]]:
    """Return ``[{"path": ..., "value": ...}]`` for each equality term."""
    out = []
    for m in _COMPARISON_RE.finditer(pattern or ""):
        value = m.group("value").replace("\\'", "'").replace("\\\\", "\\")
        out.append({"path": m.group("path"), "value": value})
    return out


def _normalize_path(path: str) -> str:
    return path.replace("'", "").lower()


class StixPatternFeedAdapter(FeedAdapter):
    """STIX 2.x indicator pattern adapter."""

    format = FeedFormat.STIX

    def _records(self) -> Iterator[Dict[str, Any]]:
        text = self._retrieve()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchError(f"{self.name}: payload is not JSON: {exc}", feed=self.name) from exc

        for obj in _objects(payload):
            if obj.get("type") != "indicator" or obj.get("revoked"):
                continue
            if obj.get("pattern_type", "stix") != "stix":
                continue
            comparisons = extract_comparisons(obj.get("pattern", ""))
            if not comparisons:
                # Surfaces as a counted parse error
                yield {"object": obj, "path": None, "value": None}
                continue
            for comp in comparisons:
                yield {"object": obj, "path": comp["path"], "value": comp["value"]}

    def parse(self, raw: Dict[str, Any]) -> ParseOutcome:
        obj = raw.get("object") or {}
        path = raw.get("path")
        if not path:
            return ParseOutcome.failure(
                f"no supported comparison in pattern {obj.get('pattern')!r}", raw
            )
        ioc_type = _PATH_MAP.get(_normalize_path(path))
        if ioc_type is None:
            return ParseOutcome.failure(f"unsupported object path {path!r}", raw)

        tags = parse_tags(obj.get("labels")) + parse_tags(obj.get("indicator_types"))
        context = {"stix": {"id": obj.get("id"), "name": obj.get("name")}}
        try:
            indicator = self._build_indicator(
                ioc_type,
                raw.get("value") or "",
                confidence=_stix_confidence(obj.get("confidence")),
                first_seen=obj.get("valid_from") or obj.get("created"),
                last_seen=obj.get("modified"),
                tags=tags,
                context=context,
            )
        except ValueError as exc:
            return ParseOutcome.failure(str(exc), raw)
        return ParseOutcome.success(indicator)


def _objects(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        objects = payload.get("objects")
        if objects is None and payload.get("type") == "indicator":
            objects = [payload]
        payload = objects or []
    if not isinstance(payload, list):
        return []
    return [o for o in payload if isinstance(o, dict)]


def _stix_confidence(value: Any) -> Optional[float]:
    """STIX confidence is an integer 0-100."""
    if value is None or value == "":
        return None
    try:
        return min(1.0, max(0.0, float(value) / 100.0))
    except (TypeError, ValueError):
        return None
