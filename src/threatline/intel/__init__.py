# Intel Module - Indicator Ingestion
#
# Feed adapters, validation, deduplication/lifecycle and the whitelist.

from .adapter import FeedAdapter, ParseOutcome
from .csv_adapter import CsvFeedAdapter
from .http_json_adapter import HttpJsonFeedAdapter
from .lifecycle import AgingPolicy, LifecycleManager, SweepReport, merge
from .misp_adapter import MispFeedAdapter
from .models import (
    Detection,
    DetectionMethod,
    Indicator,
    IndicatorStatus,
    IndicatorType,
    SeverityLevel,
)
from .registry import ADAPTERS, build_adapter
from .stix_adapter import StixPatternFeedAdapter
from .validator import IndicatorValidator, ValidationResult
from .whitelist import Whitelist, WhitelistEntry

__all__ = [
    # Models
    "Indicator",
    "IndicatorType",
    "IndicatorStatus",
    "Detection",
    "DetectionMethod",
    "SeverityLevel",
    # Adapters
    "FeedAdapter",
    "ParseOutcome",
    "CsvFeedAdapter",
    "MispFeedAdapter",
    "StixPatternFeedAdapter",
    "HttpJsonFeedAdapter",
    "ADAPTERS",
    "build_adapter",
    # Validation
    "IndicatorValidator",
    "ValidationResult",
    # Lifecycle
    "merge",
    "AgingPolicy",
    "LifecycleManager",
    "SweepReport",
    "Whitelist",
    "WhitelistEntry",
]
