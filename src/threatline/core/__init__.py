# Core Module - Shared Utilities
#
# Shared functionality used by every pipeline stage:
# - Audit logging
# - Operator configuration
# - Retry / backoff policy
# - Error taxonomy
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
)
from .config import (
    ConfidenceMode,
    ConfigWatcher,
    FeedFormat,
    FeedSource,
    PipelineConfig,
    WhitelistEntryConfig,
    load_config,
    parse_config,
    resolve_credential,
)
from .errors import (
    ConfigError,
    EnrichmentTimeout,
    FetchError,
    MitigationFailure,
    ParseError,
    StoreUnavailable,
    ThreatlineError,
    ValidationFailure,
)
from .retry import RetryPolicy

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    # Configuration
    "ConfidenceMode",
    "ConfigWatcher",
    "FeedFormat",
    "FeedSource",
    "PipelineConfig",
    "WhitelistEntryConfig",
    "load_config",
    "parse_config",
    "resolve_credential",
    # Errors
    "ThreatlineError",
    "ConfigError",
    "FetchError",
    "ParseError",
    "ValidationFailure",
    "EnrichmentTimeout",
    "StoreUnavailable",
    "MitigationFailure",
    # Retry
    "RetryPolicy",
]
