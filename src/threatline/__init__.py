# Threatline - Main Package
#
# Threat intelligence / IOC pipeline: feeds are collected, validated,
# deduplicated, enriched, stored in hot/warm/cold tiers, matched against
# telemetry, and matches trigger automated or human-gated response.

__version__ = "0.1.0"
__description__ = "Threat intelligence / IOC processing pipeline"

from .core import (
    EventSeverity,
    EventType,
    PipelineConfig,
    get_audit_logger,
    load_config,
)
from .intel import Indicator, IndicatorStatus, IndicatorType

__all__ = [
    "__version__",
    "EventSeverity",
    "EventType",
    "Indicator",
    "IndicatorStatus",
    "IndicatorType",
    "PipelineConfig",
    "get_audit_logger",
    "load_config",
]
