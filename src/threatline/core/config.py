# Core Module - Operator Configuration
#
# Feed sources, whitelist entries and pipeline tuning are static operator
# configuration: a YAML or JSON file loaded at startup and reloadable
# without restart.  Models are pydantic so that a bad file is rejected as
# a whole (ConfigError) and the previous configuration stays in effect.
#
# Secrets never live in the file.  ``credentials_ref`` names an environment
# variable (populated by the secret manager or a .env file) that
# ``resolve_credential()`` reads at fetch time.

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import ConfigError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class FeedFormat(str, Enum):
    """Wire formats understood by the feed adapter registry."""

    CSV = "csv"
    MISP = "misp"
    STIX = "stix"
    HTTP_JSON = "http_json"


class ConfidenceMode(str, Enum):
    """How corroborating observations combine their confidence.

    MAX is the default.  ADDITIVE (noisy-or) lets many weak feeds push a
    value towards 1.0 and must be chosen explicitly.
    """

    MAX = "max"
    ADDITIVE = "additive"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class FeedSource(BaseModel):
    """One configured threat feed.  Read by adapters, never mutated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    format: FeedFormat
    endpoint: str = Field(min_length=1)  # http(s) URL or local file path
    credentials_ref: Optional[str] = None  # environment variable name
    auth_header: str = "Authorization"
    auth_scheme: str = "Bearer"  # "" sends the raw secret
    poll_interval_seconds: int = Field(3600, ge=1)
    default_confidence: float = Field(0.5, ge=0.0, le=1.0)
    trust_weight: float = Field(1.0, ge=0.0, le=1.0)
    timeout_seconds: float = Field(30.0, gt=0)
    enabled: bool = True
    options: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_remote(self) -> bool:
        return self.endpoint.startswith(("http://", "https://"))


class WhitelistEntryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    value: str = Field(min_length=1)
    reason: str = ""
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ValidationSettings(BaseModel):
    allow_documentation_ranges: bool = False
    max_pattern_length: int = Field(1024, ge=16)


# Aging class -> days since last_seen before an indicator starts aging
DEFAULT_THRESHOLDS_DAYS: Dict[str, int] = {
    "ip": 30,
    "domain": 90,
    "hash": 365,
    "url": 7,
    "registry-key": 180,
    "process-name": 180,
    "command-pattern": 180,
    "behavioral-pattern": 180,
}


class LifecycleSettings(BaseModel):
    # Partial maps override the defaults per class
    thresholds_days: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_THRESHOLDS_DAYS))
    expire_grace_days: int = Field(30, ge=0)
    decay_factor: float = Field(0.8, gt=0.0, le=1.0)
    confidence_mode: ConfidenceMode = ConfidenceMode.MAX
    sweep_interval_seconds: int = Field(3600, ge=1)
    sweep_chunk_size: int = Field(500, ge=1)


class StorageSettings(BaseModel):
    hot_capacity: int = Field(100_000, ge=1)
    warm_path: str = "data/warm.db"
    warm_retention_days: int = Field(28, ge=1)
    cold_dir: str = "data/cold"
    archive_interval_seconds: int = Field(86_400, ge=1)


class EnrichmentSettings(BaseModel):
    enabled: bool = True
    timeout_seconds: float = Field(2.0, gt=0)
    max_workers: int = Field(8, ge=1)
    cache_ttl_seconds: float = Field(3600.0, gt=0)
    cache_max_entries: int = Field(50_000, ge=1)
    dns_enabled: bool = True
    geoip_db_path: Optional[str] = None
    reputation_url: Optional[str] = None
    reputation_credentials_ref: Optional[str] = None


class DetectionSettings(BaseModel):
    min_confidence: float = Field(0.6, ge=0.0, le=1.0)
    latency_budget_ms: float = Field(100.0, gt=0)
    batch_chunk_size: int = Field(1000, ge=1)
    batch_interval_seconds: Optional[int] = Field(None, ge=1)
    batch_source: Optional[str] = None  # telemetry file scanned on schedule
    siem_url: Optional[str] = None
    siem_credentials_ref: Optional[str] = None


class ResponseSettings(BaseModel):
    auto_threshold: float = Field(0.8, ge=0.0, le=1.0)
    floor: float = Field(0.3, ge=0.0, le=1.0)
    executor_url: Optional[str] = None
    executor_credentials_ref: Optional[str] = None
    action_timeout_seconds: float = Field(10.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    initial_backoff_seconds: float = Field(1.0, ge=0)
    notify_channel: Optional[str] = None

    @model_validator(mode="after")
    def _ordered(self) -> "ResponseSettings":
        if self.floor > self.auto_threshold:
            raise ValueError("floor must not exceed auto_threshold")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_backoff_seconds,
        )


class FeedRetrySettings(BaseModel):
    # Consecutive failures before a feed is flagged degraded
    max_attempts: int = Field(5, ge=1)
    initial_delay_seconds: float = Field(30.0, ge=0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay_seconds: float = Field(3600.0, ge=0)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_seconds,
            multiplier=self.multiplier,
            max_delay=self.max_delay_seconds,
            jitter=0.1,
        )


class PipelineConfig(BaseModel):
    """Root of the operator configuration file."""

    model_config = ConfigDict(extra="forbid")

    feeds: List[FeedSource] = Field(default_factory=list)
    whitelist: List[WhitelistEntryConfig] = Field(default_factory=list)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    response: ResponseSettings = Field(default_factory=ResponseSettings)
    feed_retry: FeedRetrySettings = Field(default_factory=FeedRetrySettings)
    audit_log_dir: str = "audit_logs"

    @field_validator("feeds")
    @classmethod
    def _unique_names(cls, feeds: List[FeedSource]) -> List[FeedSource]:
        seen = set()
        for feed in feeds:
            if feed.name in seen:
                raise ValueError(f"duplicate feed name: {feed.name}")
            seen.add(feed.name)
        return feeds

    def feed(self, name: str) -> Optional[FeedSource]:
        for f in self.feeds:
            if f.name == name:
                return f
        return None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Load and validate a YAML or JSON configuration file."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config not found: {p}")
    try:
        text = p.read_text(encoding="utf-8")
        if p.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read config {p}: {exc}") from exc
    return parse_config(data, origin=str(p))


def parse_config(data: Dict[str, Any], origin: str = "<dict>") -> PipelineConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{origin}: top level must be a mapping")
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"{origin}: invalid configuration: {exc}") from exc


def resolve_credential(ref: Optional[str]) -> Optional[str]:
    """Return the secret named by ``ref`` from the environment."""
    if not ref:
        return None
    secret = os.environ.get(ref)
    if secret is None:
        logger.warning("Credential reference %s is not set in the environment", ref)
    return secret


# ---------------------------------------------------------------------------
# Reload without restart
# ---------------------------------------------------------------------------


class _ConfigFileHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ConfigWatcher"):
        self._watcher = watcher

    def on_modified(self, event: FileSystemEvent):
        self._check(event.src_path)

    def on_created(self, event: FileSystemEvent):
        self._check(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        # Editors that save via rename land here
        self._check(getattr(event, "dest_path", event.src_path))

    def _check(self, path) -> None:
        if Path(os.fsdecode(path)).resolve() == self._watcher.path:
            self._watcher.trigger()


class ConfigWatcher:
    """Watch the config file and hand validated reloads to ``on_reload``.

    A file that fails validation is logged and ignored; the caller keeps
    running on its previous configuration.

    Args:
        path: Config file to watch.
        on_reload: Callback receiving the new ``PipelineConfig``.
        debounce_seconds: Collapse bursts of file events into one reload.
    """

    def __init__(
        self,
        path: Union[str, Path],
        on_reload: Callable[[PipelineConfig], None],
        debounce_seconds: float = 0.5,
    ):
        self.path = Path(path).resolve()
        self._on_reload = on_reload
        self._debounce = debounce_seconds
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self.reload_count = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._observer = Observer()
        self._observer.schedule(_ConfigFileHandler(self), str(self.path.parent), recursive=False)
        self._observer.daemon = True
        self._observer.start()
        logger.info("Watching %s for configuration changes", self.path)

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def trigger(self) -> None:
        """Schedule a debounced reload."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.reload_now)
            self._timer.daemon = True
            self._timer.start()

    def reload_now(self) -> bool:
        """Load the file immediately.  Returns True if the callback ran."""
        started = time.monotonic()
        try:
            config = load_config(self.path)
        except ConfigError as exc:
            self.last_error = str(exc)
            logger.error("Config reload rejected, keeping previous config: %s", exc)
            return False
        self.last_error = None
        self.reload_count += 1
        self._on_reload(config)
        logger.info(
            "Configuration reloaded from %s in %.1fms",
            self.path, (time.monotonic() - started) * 1000,
        )
        return True
