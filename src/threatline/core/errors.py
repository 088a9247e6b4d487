# Core Module - Pipeline Error Taxonomy
#
# Exceptions raised at stage boundaries.  Per-record problems (bad rows,
# invalid values, slow enrichers) travel through the pipeline as outcome
# values instead; the matching exception types exist here so callers can
# still raise them in isolation (e.g. ``ParseOutcome.unwrap()``).

from typing import Optional


class ThreatlineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ThreatlineError):
    """Operator configuration could not be loaded or failed validation."""


class FetchError(ThreatlineError):
    """A feed poll failed (network, auth, HTTP error or rate limit).

    Retried with backoff by the pipeline.  Never fatal to the process.
    """

    def __init__(
        self,
        message: str,
        feed: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.feed = feed
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class ParseError(ThreatlineError):
    """A raw feed record could not be turned into an Indicator."""

    def __init__(self, message: str, raw: object = None):
        super().__init__(message)
        self.raw = raw


class ValidationFailure(ThreatlineError):
    """An indicator value is semantically invalid."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class EnrichmentTimeout(ThreatlineError):
    """An enricher did not answer within the join timeout."""


class StoreUnavailable(ThreatlineError):
    """A storage tier could not be reached.

    ``tier`` is ``"hot"``, ``"warm"`` or ``"cold"``.  Warm-tier
    unavailability halts new merges until the store recovers.
    """

    def __init__(self, message: str, tier: str = "warm"):
        super().__init__(message)
        self.tier = tier


class MitigationFailure(ThreatlineError):
    """A response action failed after all retries."""

    def __init__(self, message: str, action: str = "", target: str = ""):
        super().__init__(message)
        self.action = action
        self.target = target
