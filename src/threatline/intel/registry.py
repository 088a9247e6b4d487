# Intel Module - Feed Adapter Registry
#
# Closed mapping from FeedSource.format to the adapter class that speaks it.

from typing import Dict, Optional, Type

from ..core.config import FeedFormat, FeedSource
from ..core.errors import ConfigError
from ..core.retry import RetryPolicy
from .adapter import FeedAdapter
from .csv_adapter import CsvFeedAdapter
from .http_json_adapter import HttpJsonFeedAdapter
from .misp_adapter import MispFeedAdapter
from .stix_adapter import StixPatternFeedAdapter

ADAPTERS: Dict[FeedFormat, Type[FeedAdapter]] = {
    FeedFormat.CSV: CsvFeedAdapter,
    FeedFormat.MISP: MispFeedAdapter,
    FeedFormat.STIX: StixPatternFeedAdapter,
    FeedFormat.HTTP_JSON: HttpJsonFeedAdapter,
}


def build_adapter(source: FeedSource, retry: Optional[RetryPolicy] = None) -> FeedAdapter:
    """Instantiate the adapter for ``source.format``."""
    cls = ADAPTERS.get(source.format)
    if cls is None:
        raise ConfigError(f"No adapter for feed format {source.format!r}")
    try:
        return cls(source, retry)
    except ValueError as exc:
        # Bad format-specific options (e.g. unknown indicator_type)
        raise ConfigError(f"Feed {source.name}: {exc}") from exc
