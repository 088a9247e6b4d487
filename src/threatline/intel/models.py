# Intel Module - Indicator Data Models
#
# Defines the canonical data flowing through the pipeline:
#   Indicator  - one IOC keyed by (type, value), with confidence, sources,
#                tags, enrichment context and lifecycle status
#   Detection  - immutable record of a telemetry event matching an Indicator
#
# Values are normalized on construction so that the natural key is stable
# no matter which feed (or which defanging convention) delivered them.

import copy
import ipaddress
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Best-effort timestamp parsing for feed fields.

    Accepts datetimes, epoch seconds, ISO 8601 (with ``Z``) and the
    ``YYYY-MM-DD HH:MM:SS`` form common in CSV feeds.
    """
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return default


class IndicatorType(str, Enum):
    """Sub-classification of Indicators of Compromise."""

    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    REGISTRY_KEY = "registry-key"
    PROCESS_NAME = "process-name"
    COMMAND_PATTERN = "command-pattern"
    BEHAVIORAL_PATTERN = "behavioral-pattern"

    @property
    def is_hash(self) -> bool:
        return self in _HASH_TYPES

    @property
    def aging_class(self) -> str:
        """Key into the per-type aging thresholds (hashes share one)."""
        return "hash" if self.is_hash else self.value

    @classmethod
    def parse(cls, text: str) -> "IndicatorType":
        """Map feed spellings (``ipv4``, ``FileHash-SHA256`` ...) to a type."""
        key = re.sub(r"[\s_]+", "-", str(text).strip().lower())
        if key in _ALIASES:
            return _ALIASES[key]
        return cls(key)


_HASH_TYPES = frozenset({IndicatorType.MD5, IndicatorType.SHA1, IndicatorType.SHA256})

HASH_LENGTHS: Dict[IndicatorType, int] = {
    IndicatorType.MD5: 32,
    IndicatorType.SHA1: 40,
    IndicatorType.SHA256: 64,
}

_ALIASES: Dict[str, IndicatorType] = {
    "ipv4": IndicatorType.IP,
    "ipv6": IndicatorType.IP,
    "ip-addr": IndicatorType.IP,
    "ip-dst": IndicatorType.IP,
    "ip-src": IndicatorType.IP,
    "ipv4-addr": IndicatorType.IP,
    "ipv6-addr": IndicatorType.IP,
    "hostname": IndicatorType.DOMAIN,
    "domain-name": IndicatorType.DOMAIN,
    "fqdn": IndicatorType.DOMAIN,
    "uri": IndicatorType.URL,
    "filehash-md5": IndicatorType.MD5,
    "filehash-sha1": IndicatorType.SHA1,
    "filehash-sha256": IndicatorType.SHA256,
    "md5-hash": IndicatorType.MD5,
    "sha1-hash": IndicatorType.SHA1,
    "sha256-hash": IndicatorType.SHA256,
    "regkey": IndicatorType.REGISTRY_KEY,
    "windows-registry-key": IndicatorType.REGISTRY_KEY,
    "process": IndicatorType.PROCESS_NAME,
    "filename": IndicatorType.PROCESS_NAME,
    "command-line": IndicatorType.COMMAND_PATTERN,
    "behavior": IndicatorType.BEHAVIORAL_PATTERN,
}


class IndicatorStatus(str, Enum):
    ACTIVE = "active"
    AGING = "aging"
    EXPIRED = "expired"
    WHITELISTED = "whitelisted"


class SeverityLevel(str, Enum):
    """Qualitative severity for detections."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "SeverityLevel":
        if score >= 0.80:
            return cls.CRITICAL
        if score >= 0.55:
            return cls.HIGH
        if score >= 0.30:
            return cls.MEDIUM
        return cls.LOW


class DetectionMethod(str, Enum):
    REALTIME = "realtime"
    BATCH = "batch"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_DEFANG = (
    ("hxxps://", "https://"),
    ("hxxp://", "http://"),
    ("[.]", "."),
    ("(.)", "."),
    ("[:]", ":"),
    ("[dot]", "."),
)


def refang(value: str) -> str:
    """Undo the common defanging conventions used by feeds."""
    out = value
    for old, new in _DEFANG:
        out = out.replace(old, new)
    if out.lower().startswith("hxxp"):
        out = "http" + out[4:]
    return out


def normalize_value(ioc_type: IndicatorType, value: str) -> str:
    """Canonical text form of a value for its type.

    Values that cannot be canonicalized are returned stripped so the
    validator can reject them with a meaningful reason.
    """
    text = str(value).strip()
    if ioc_type == IndicatorType.IP:
        text = refang(text).strip("[]")
        try:
            return str(ipaddress.ip_address(text))
        except ValueError:
            return text
    if ioc_type == IndicatorType.DOMAIN:
        return refang(text).lower().rstrip(".")
    if ioc_type == IndicatorType.URL:
        text = refang(text)
        try:
            parts = urlsplit(text)
        except ValueError:
            return text
        if not parts.scheme or not parts.netloc:
            return text
        return urlunsplit((
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path,
            parts.query,
            parts.fragment,
        ))
    if ioc_type.is_hash:
        return text.lower()
    if ioc_type in (IndicatorType.REGISTRY_KEY, IndicatorType.PROCESS_NAME):
        # Windows treats both case-insensitively
        return text.lower()
    return text


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------


@dataclass
class Indicator:
    """Indicator of Compromise.

    ``(type, value)`` is the natural key.  ``confidence`` is clamped to
    [0, 1] and ``first_seen`` must not be later than ``last_seen``.
    """

    type: IndicatorType
    value: str
    confidence: float = 0.5
    sources: Set[str] = field(default_factory=set)
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: Optional[datetime] = None
    tags: Set[str] = field(default_factory=set)
    context: Dict[str, Any] = field(default_factory=dict)
    status: IndicatorStatus = IndicatorStatus.ACTIVE

    def __post_init__(self):
        if not isinstance(self.type, IndicatorType):
            self.type = IndicatorType.parse(self.type)
        if not isinstance(self.status, IndicatorStatus):
            self.status = IndicatorStatus(self.status)
        self.value = normalize_value(self.type, self.value)
        conf = float(self.confidence)
        if math.isnan(conf):
            raise ValueError("confidence must be a number")
        self.confidence = min(1.0, max(0.0, conf))
        self.sources = set(self.sources)
        self.tags = {t.strip() for t in self.tags if t and t.strip()}
        self.first_seen = ensure_utc(self.first_seen)
        self.last_seen = ensure_utc(self.last_seen) if self.last_seen else self.first_seen
        if self.first_seen > self.last_seen:
            raise ValueError(
                f"first_seen {self.first_seen.isoformat()} is after "
                f"last_seen {self.last_seen.isoformat()}"
            )

    @property
    def key(self) -> Tuple[IndicatorType, str]:
        return (self.type, self.value)

    @property
    def source(self) -> str:
        """Representative source for single-valued outbound records."""
        return sorted(self.sources)[0] if self.sources else ""

    @property
    def is_live(self) -> bool:
        return self.status in (IndicatorStatus.ACTIVE, IndicatorStatus.AGING)

    def copy(self) -> "Indicator":
        return replace(
            self,
            sources=set(self.sources),
            tags=set(self.tags),
            context=copy.deepcopy(self.context),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": round(self.confidence, 6),
            "sources": sorted(self.sources),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "tags": sorted(self.tags),
            "context": self.context,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Indicator":
        return cls(
            type=IndicatorType(data["type"]),
            value=data["value"],
            confidence=float(data.get("confidence", 0.5)),
            sources=set(data.get("sources") or []),
            first_seen=parse_timestamp(data.get("first_seen"), utcnow()),
            last_seen=parse_timestamp(data.get("last_seen")),
            tags=set(data.get("tags") or []),
            context=dict(data.get("context") or {}),
            status=IndicatorStatus(data.get("status", "active")),
        )


@dataclass(frozen=True)
class Detection:
    """A telemetry event matched against a stored Indicator.

    Immutable.  Re-analysis produces a new record via ``supersede()``.
    """

    indicator: Indicator
    event: Mapping[str, Any]
    matched_value: str
    severity: float
    method: DetectionMethod
    detected_at: datetime = field(default_factory=utcnow)
    detection_id: str = field(default_factory=lambda: uuid4().hex)
    supersedes: Optional[str] = None

    def __post_init__(self):
        # Snapshot inputs so later store merges can't change this record
        object.__setattr__(self, "indicator", self.indicator.copy())
        object.__setattr__(self, "event", MappingProxyType(copy.deepcopy(dict(self.event))))
        object.__setattr__(self, "severity", min(1.0, max(0.0, float(self.severity))))

    @property
    def severity_level(self) -> SeverityLevel:
        return SeverityLevel.from_score(self.severity)

    def supersede(self, **changes: Any) -> "Detection":
        """Return a new Detection replacing this one (new ID, linked)."""
        fields = {
            "indicator": self.indicator,
            "event": dict(self.event),
            "matched_value": self.matched_value,
            "severity": self.severity,
            "method": self.method,
        }
        fields.update(changes)
        return Detection(supersedes=self.detection_id, **fields)

    def to_siem_record(self) -> Dict[str, Any]:
        """Outbound record shape for the SIEM push interface."""
        return {
            "timestamp": self.detected_at.isoformat(),
            "indicatorType": self.indicator.type.value,
            "indicatorValue": self.indicator.value,
            "confidence": round(self.indicator.confidence, 4),
            "source": self.indicator.source,
            "detectionMethod": self.method.value,
            "severity": round(self.severity, 4),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection_id": self.detection_id,
            "supersedes": self.supersedes,
            "detected_at": self.detected_at.isoformat(),
            "method": self.method.value,
            "matched_value": self.matched_value,
            "severity": round(self.severity, 4),
            "severity_level": self.severity_level.value,
            "indicator": self.indicator.to_dict(),
            "event": dict(self.event),
        }
