# Detection Module - Candidate Extraction
#
# Pulls indicator candidates out of telemetry events:
#   - typed fields of structured events (src_ip, domain, hash, ...)
#   - regex scans of every string value (IPs, URLs, domains, hashes,
#     registry keys)
# Candidates are normalized exactly like stored indicators and
# deduplicated per processing unit (one event, or one batch window).

import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from ..intel.models import HASH_LENGTHS, IndicatorType, normalize_value
from ..intel.validator import domain_problem

Key = Tuple[IndicatorType, str]

# Structured field -> candidate type (None = infer hash type from length)
FIELD_TYPES: Dict[str, Optional[IndicatorType]] = {
    "src_ip": IndicatorType.IP,
    "dst_ip": IndicatorType.IP,
    "ip": IndicatorType.IP,
    "client_ip": IndicatorType.IP,
    "remote_ip": IndicatorType.IP,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "query": IndicatorType.DOMAIN,
    "url": IndicatorType.URL,
    "hash": None,
    "md5": IndicatorType.MD5,
    "sha1": IndicatorType.SHA1,
    "sha256": IndicatorType.SHA256,
    "file_hash": None,
    "process_name": IndicatorType.PROCESS_NAME,
    "command_line": IndicatorType.COMMAND_PATTERN,
    "registry_key": IndicatorType.REGISTRY_KEY,
    "behavior": IndicatorType.BEHAVIORAL_PATTERN,
}

_HASH_BY_LENGTH = {length: t for t, length in HASH_LENGTHS.items()}

_URL_RE = re.compile(r"\b(?:https?|ftp)://[^\s\"'<>]+", re.IGNORECASE)
_IPV4_RE = re.compile(r"(?<![\d.])(?:\d{1,3}\.){3}\d{1,3}(?![\d.])")
_IPV6_RE = re.compile(r"(?<![0-9A-Fa-f:])(?:[0-9A-Fa-f]{0,4}:){2,7}[0-9A-Fa-f]{0,4}(?![0-9A-Fa-f:])")
_HASH_RE = re.compile(r"\b(?:[0-9a-fA-F]{64}|[0-9a-fA-F]{40}|[0-9a-fA-F]{32})\b")
_DOMAIN_RE = re.compile(
    r"\b(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z][a-zA-Z0-9-]{1,62}\b"
)
_REGKEY_RE = re.compile(
    r"\b(?:HKLM|HKCU|HKCR|HKU|HKCC|HKEY_[A-Z_]+)\\[^\s\"']+", re.IGNORECASE
)
# File names that look like domains
_FILE_SUFFIXES = frozenset({
    "exe", "dll", "sys", "bat", "cmd", "ps1", "vbs", "js", "jar", "zip",
    "txt", "log", "tmp", "doc", "docx", "xls", "xlsx", "pdf", "png", "jpg",
})


@dataclass(frozen=True)
class Candidate:
    type: IndicatorType
    value: str
    field: str = ""

    @property
    def key(self) -> Key:
        return (self.type, self.value)


class CandidateExtractor:
    """Extract normalized indicator candidates from events.

    Args:
        scan_strings: Regex-scan free-text values as well as typed fields.
        max_string_length: Skip scanning values longer than this.
    """

    def __init__(self, scan_strings: bool = True, max_string_length: int = 65536):
        self.scan_strings = scan_strings
        self.max_string_length = max_string_length

    def extract(self, event: Mapping[str, Any]) -> List[Candidate]:
        """Unique candidates of one event (first field that produced each wins)."""
        seen: Set[Key] = set()
        out: List[Candidate] = []
        for cand in self._iter_candidates(event):
            if cand.key not in seen:
                seen.add(cand.key)
                out.append(cand)
        return out

    def extract_many(self, events: Iterable[Mapping[str, Any]]) -> Dict[Key, List[int]]:
        """Candidate key -> indexes of the events containing it."""
        index: Dict[Key, List[int]] = {}
        for i, event in enumerate(events):
            for cand in self.extract(event):
                index.setdefault(cand.key, []).append(i)
        return index

    # ------------------------------------------------------------------

    def _iter_candidates(self, event: Mapping[str, Any]) -> Iterator[Candidate]:
        for name, value in _flatten(event):
            leaf = name.rsplit(".", 1)[-1].lower()
            if leaf in FIELD_TYPES and isinstance(value, (str, int)):
                cand = self._typed(leaf, str(value), name)
                if cand is not None:
                    yield cand
            if self.scan_strings and isinstance(value, str) and len(value) <= self.max_string_length:
                yield from self._scan(value, name)

    @staticmethod
    def _typed(leaf: str, value: str, name: str) -> Optional[Candidate]:
        value = value.strip()
        if not value:
            return None
        ioc_type = FIELD_TYPES[leaf]
        if ioc_type is None:
            ioc_type = _HASH_BY_LENGTH.get(len(value))
            if ioc_type is None:
                return None
        return Candidate(ioc_type, normalize_value(ioc_type, value), name)

    @staticmethod
    def _scan(text: str, name: str) -> Iterator[Candidate]:
        for m in _URL_RE.finditer(text):
            url = m.group(0).rstrip(".,;)")
            yield Candidate(IndicatorType.URL, normalize_value(IndicatorType.URL, url), name)

        for m in _IPV4_RE.finditer(text):
            if _is_ip(m.group(0)):
                yield Candidate(IndicatorType.IP, normalize_value(IndicatorType.IP, m.group(0)), name)
        if ":" in text:
            for m in _IPV6_RE.finditer(text):
                token = m.group(0)
                if token.count(":") >= 2 and _is_ip(token):
                    yield Candidate(IndicatorType.IP, normalize_value(IndicatorType.IP, token), name)

        for m in _HASH_RE.finditer(text):
            token = m.group(0)
            yield Candidate(_HASH_BY_LENGTH[len(token)], token.lower(), name)

        for m in _REGKEY_RE.finditer(text):
            yield Candidate(
                IndicatorType.REGISTRY_KEY,
                normalize_value(IndicatorType.REGISTRY_KEY, m.group(0)),
                name,
            )

        for m in _DOMAIN_RE.finditer(text):
            token = m.group(0).lower()
            if token.rsplit(".", 1)[-1] in _FILE_SUFFIXES:
                continue
            if _is_ip(token) or domain_problem(token):
                continue
            yield Candidate(IndicatorType.DOMAIN, normalize_value(IndicatorType.DOMAIN, token), name)


def _flatten(obj: Any, prefix: str = "") -> Iterator[Tuple[str, Any]]:
    if isinstance(obj, Mapping):
        for k, v in obj.items():
            yield from _flatten(v, f"{prefix}.{k}" if prefix else str(k))
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            yield from _flatten(v, prefix)
    else:
        yield prefix, obj


def _is_ip(text: str) -> bool:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True
