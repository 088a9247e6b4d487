# Intel Module - Generic HTTP+JSON Feed Adapter
#
# Authenticated polling of JSON APIs that return a list of indicator-like
# items, optionally paginated through a next-page link in the body.
#
# Options (FeedSource.options):
#   items_path      dotted path to the item list (default: top-level list,
#                   else "results", "data" or "items")
#   fields          canonical field -> item key overrides
#   indicator_type  fixed type when items carry no type field
#   next_path       dotted path to the next-page URL (default "next")
#   max_pages       page cap per poll (default 10)
#   params          query parameters sent with the first request

import json
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urljoin

from ..core.config import FeedFormat, FeedSource
from ..core.errors import FetchError
from ..core.retry import RetryPolicy
from .adapter import FeedAdapter, ParseOutcome, parse_confidence, parse_tags
from .models import IndicatorType

DEFAULT_FIELDS: Dict[str, str] = {
    "type": "type",
    "value": "indicator",
    "confidence": "confidence",
    "first_seen": "first_seen",
    "last_seen": "last_seen",
    "tags": "tags",
}
DEFAULT_MAX_PAGES = 10
_FALLBACK_ITEM_KEYS = ("results", "data", "items", "indicators")


def dig(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through nested dicts; None when absent."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class HttpJsonFeedAdapter(FeedAdapter):
    """Generic authenticated HTTP+JSON polling adapter."""

    format = FeedFormat.HTTP_JSON

    def __init__(self, source: FeedSource, retry: Optional[RetryPolicy] = None):
        super().__init__(source, retry)
        opts = source.options
        self._items_path: Optional[str] = opts.get("items_path")
        self._fields = dict(DEFAULT_FIELDS)
        self._fields.update(opts.get("fields", {}))
        fixed = opts.get("indicator_type")
        self._fixed_type: Optional[IndicatorType] = IndicatorType.parse(fixed) if fixed else None
        self._next_path: str = opts.get("next_path", "next")
        self._max_pages: int = int(opts.get("max_pages", DEFAULT_MAX_PAGES))
        self._params: Dict[str, Any] = dict(opts.get("params", {}))

    def _records(self) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = self.source.endpoint
        params: Optional[Dict[str, Any]] = self._params or None
        pages = 0
        while url and pages < self._max_pages:
            payload = self._load(self._retrieve(url, params))
            pages += 1
            for item in self._items(payload):
                yield item
            next_url = dig(payload, self._next_path) if isinstance(payload, dict) else None
            url = urljoin(url, next_url) if next_url else None
            params = None  # next links carry their own query

    def _load(self, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise FetchError(f"{self.name}: payload is not JSON: {exc}", feed=self.name) from exc

    def _items(self, payload: Any) -> List[Dict[str, Any]]:
        if self._items_path:
            items = dig(payload, self._items_path)
        elif isinstance(payload, list):
            items = payload
        else:
            items = None
            for key in _FALLBACK_ITEM_KEYS:
                if isinstance(payload, dict) and isinstance(payload.get(key), list):
                    items = payload[key]
                    break
        if not isinstance(items, list):
            return []
        return [i for i in items if isinstance(i, dict)]

    def parse(self, raw: Dict[str, Any]) -> ParseOutcome:
        f = self._fields
        value = raw.get(f["value"])
        if value is None or str(value).strip() == "":
            return ParseOutcome.failure(f"item has no {f['value']!r} field", raw)

        if self._fixed_type is not None:
            ioc_type = self._fixed_type
        else:
            type_text = raw.get(f["type"])
            if not type_text:
                return ParseOutcome.failure(f"item has no {f['type']!r} field", raw)
            try:
                ioc_type = IndicatorType.parse(str(type_text))
            except ValueError:
                return ParseOutcome.failure(f"unknown indicator type {type_text!r}", raw)

        known = set(f.values())
        context = {k: v for k, v in raw.items() if k not in known and isinstance(v, (str, int, float, bool))}
        try:
            indicator = self._build_indicator(
                ioc_type,
                str(value),
                confidence=parse_confidence(raw.get(f["confidence"])),
                first_seen=raw.get(f["first_seen"]),
                last_seen=raw.get(f["last_seen"]),
                tags=parse_tags(raw.get(f["tags"])),
                context={"feed": context} if context else None,
            )
        except ValueError as exc:
            return ParseOutcome.failure(str(exc), raw)
        return ParseOutcome.success(indicator)
