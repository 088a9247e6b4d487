# Intel Module - Delimited Text Feed Adapter
#
# Rows with named columns, e.g. blocklist exports:
#
#   # comment lines are skipped
#   type,value,confidence,first_seen,last_seen,tags
#   ip,198.51.100.7,80,2024-06-01 00:00:00,,botnet;c2
#
# Options (FeedSource.options):
#   delimiter       field separator (default ",")
#   columns         canonical field -> column name overrides
#   fieldnames      column names when the file has no header row
#   indicator_type  fixed type for single-type lists (no type column)
#   comment_prefix  lines starting with it are ignored (default "#")

import csv
import io
from typing import Any, Dict, Iterator, Optional

from ..core.config import FeedFormat, FeedSource
from ..core.retry import RetryPolicy
from .adapter import FeedAdapter, ParseOutcome, parse_confidence, parse_tags
from .models import IndicatorType

DEFAULT_COLUMNS: Dict[str, str] = {
    "type": "type",
    "value": "value",
    "confidence": "confidence",
    "first_seen": "first_seen",
    "last_seen": "last_seen",
    "tags": "tags",
}


class CsvFeedAdapter(FeedAdapter):
    """Delimited-text feed adapter."""

    format = FeedFormat.CSV

    def __init__(self, source: FeedSource, retry: Optional[RetryPolicy] = None):
        super().__init__(source, retry)
        opts = source.options
        self._delimiter: str = opts.get("delimiter", ",")
        self._columns = dict(DEFAULT_COLUMNS)
        self._columns.update(opts.get("columns", {}))
        self._fieldnames = opts.get("fieldnames")
        self._comment_prefix: str = opts.get("comment_prefix", "#")
        fixed = opts.get("indicator_type")
        self._fixed_type: Optional[IndicatorType] = IndicatorType.parse(fixed) if fixed else None

    def _records(self) -> Iterator[Dict[str, Any]]:
        text = self._retrieve()
        lines = (
            line for line in io.StringIO(text)
            if line.strip() and not line.lstrip().startswith(self._comment_prefix)
        )
        reader = csv.DictReader(lines, fieldnames=self._fieldnames, delimiter=self._delimiter)
        for row in reader:
            yield {k.strip() if isinstance(k, str) else k: v for k, v in row.items()}

    def parse(self, raw: Dict[str, Any]) -> ParseOutcome:
        cols = self._columns
        value = (raw.get(cols["value"]) or "").strip()
        if not value:
            return ParseOutcome.failure("missing value column", raw)

        if self._fixed_type is not None:
            ioc_type = self._fixed_type
        else:
            type_text = (raw.get(cols["type"]) or "").strip()
            if not type_text:
                return ParseOutcome.failure("missing type column", raw)
            try:
                ioc_type = IndicatorType.parse(type_text)
            except ValueError:
                return ParseOutcome.failure(f"unknown indicator type {type_text!r}", raw)

        try:
            indicator = self._build_indicator(
                ioc_type,
                value,
                confidence=parse_confidence(raw.get(cols["confidence"])),
                first_seen=raw.get(cols["first_seen"]),
                last_seen=raw.get(cols["last_seen"]),
                tags=parse_tags(raw.get(cols["tags"])),
            )
        except ValueError as exc:
            return ParseOutcome.failure(str(exc), raw)
        return ParseOutcome.success(indicator)
