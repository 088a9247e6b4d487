# Intel Module - Indicator Validator
#
# Composed of independent rule checks; every rule must pass.  Feeds
# routinely emit malformed or placeholder values, so a failing record is
# dropped and counted (a ``ValidationResult`` value), never raised.

import ipaddress
import re
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .models import HASH_LENGTHS, Indicator, IndicatorType

# RFC 5737 / RFC 3849 documentation ranges (reserved, but used by labs)
_DOCUMENTATION_NETS = tuple(
    ipaddress.ip_network(n)
    for n in ("192.0.2.0/24", "198.51.100.0/24", "203.0.113.0/24", "2001:db8::/32")
)

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^(?:[a-z]{2,63}|xn--[a-z0-9-]{1,59})$")
_HEX_RE = re.compile(r"^[0-9a-f]+$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_REGISTRY_HIVES = (
    "hklm", "hkcu", "hkcr", "hku", "hkcc",
    "hkey_local_machine", "hkey_current_user", "hkey_classes_root",
    "hkey_users", "hkey_current_config",
)

# Values feeds use when they have nothing real to say
PLACEHOLDER_VALUES = frozenset({
    "", "-", "n/a", "na", "none", "null", "nil", "unknown", "todo", "tbd",
    "0.0.0.0", "::", "localhost", "example.com", "example.org", "example.net",
    "test", "placeholder",
})

MAX_DOMAIN_LENGTH = 253
MAX_URL_LENGTH = 2048
MAX_REGISTRY_KEY_LENGTH = 512
MAX_PROCESS_NAME_LENGTH = 255


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one indicator."""

    accepted: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.accepted


ACCEPTED = ValidationResult(True)


def _reject(reason: str) -> ValidationResult:
    return ValidationResult(False, reason)


Rule = Callable[[Indicator], Optional[str]]


class IndicatorValidator:
    """Stateless rule set plus thread-safe rejection counters.

    Args:
        allow_documentation_ranges: Admit RFC 5737/3849 addresses
            (lab feeds and fixtures use them).
        max_pattern_length: Length cap for command/behavioral patterns.
    """

    def __init__(
        self,
        allow_documentation_ranges: bool = False,
        max_pattern_length: int = 1024,
    ):
        self.allow_documentation_ranges = allow_documentation_ranges
        self.max_pattern_length = max_pattern_length
        self._lock = threading.Lock()
        self._accepted = 0
        self._rejected: Dict[str, int] = {}

        self._type_rules: Dict[IndicatorType, Rule] = {
            IndicatorType.IP: self._check_ip,
            IndicatorType.DOMAIN: self._check_domain,
            IndicatorType.URL: self._check_url,
            IndicatorType.MD5: self._check_hash,
            IndicatorType.SHA1: self._check_hash,
            IndicatorType.SHA256: self._check_hash,
            IndicatorType.REGISTRY_KEY: self._check_registry_key,
            IndicatorType.PROCESS_NAME: self._check_process_name,
            IndicatorType.COMMAND_PATTERN: self._check_pattern,
            IndicatorType.BEHAVIORAL_PATTERN: self._check_pattern,
        }
        self._common_rules: List[Rule] = [
            self._check_confidence,
            self._check_placeholder,
        ]

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def validate(self, indicator: Indicator) -> bool:
        return self.check(indicator).accepted

    def check(self, indicator: Indicator) -> ValidationResult:
        """Run every rule; the first failing rule names the reason."""
        result = self.evaluate(indicator)
        with self._lock:
            if result.accepted:
                self._accepted += 1
            else:
                self._rejected[result.reason] = self._rejected.get(result.reason, 0) + 1
        return result

    def evaluate(self, indicator: Indicator) -> ValidationResult:
        """Like ``check`` but without touching the counters."""
        for rule in self._common_rules:
            reason = rule(indicator)
            if reason:
                return _reject(reason)
        type_rule = self._type_rules.get(indicator.type)
        if type_rule is None:
            return _reject("unsupported_type")
        reason = type_rule(indicator)
        if reason:
            return _reject(reason)
        return ACCEPTED

    def partition(self, indicators: List[Indicator]) -> Tuple[List[Indicator], List[Tuple[Indicator, str]]]:
        """Split into (accepted, [(rejected, reason), ...])."""
        accepted: List[Indicator] = []
        rejected: List[Tuple[Indicator, str]] = []
        for ind in indicators:
            result = self.check(ind)
            if result.accepted:
                accepted.append(ind)
            else:
                rejected.append((ind, result.reason))
        return accepted, rejected

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "accepted": self._accepted,
                "rejected": sum(self._rejected.values()),
                "rejected_by_reason": dict(self._rejected),
            }

    # ------------------------------------------------------------------
    # Common rules
    # ------------------------------------------------------------------

    @staticmethod
    def _check_confidence(ind: Indicator) -> Optional[str]:
        if not 0.0 <= ind.confidence <= 1.0:
            return "confidence_out_of_range"
        return None

    @staticmethod
    def _check_placeholder(ind: Indicator) -> Optional[str]:
        value = ind.value.strip().lower()
        if value in PLACEHOLDER_VALUES:
            return "placeholder_value"
        if ind.type.is_hash and value and set(value) == {"0"}:
            return "placeholder_value"
        return None

    # ------------------------------------------------------------------
    # Type rules
    # ------------------------------------------------------------------

    def _check_ip(self, ind: Indicator) -> Optional[str]:
        try:
            addr = ipaddress.ip_address(ind.value)
        except ValueError:
            return "malformed_ip"
        if any(addr in net for net in _DOCUMENTATION_NETS):
            return None if self.allow_documentation_ranges else "reserved_ip"
        if getattr(addr, "ipv4_mapped", None) is not None:
            addr = addr.ipv4_mapped
        if addr.is_private:
            return "private_ip"
        if (
            addr.is_loopback
            or addr.is_link_local
            or addr.is_multicast
            or addr.is_reserved
            or addr.is_unspecified
            or not addr.is_global
        ):
            return "reserved_ip"
        return None

    @staticmethod
    def _check_domain(ind: Indicator) -> Optional[str]:
        return domain_problem(ind.value)

    @staticmethod
    def _check_url(ind: Indicator) -> Optional[str]:
        if len(ind.value) > MAX_URL_LENGTH:
            return "url_too_long"
        if _CONTROL_RE.search(ind.value) or " " in ind.value:
            return "malformed_url"
        try:
            parts = urlsplit(ind.value)
        except ValueError:
            return "malformed_url"
        if parts.scheme not in ("http", "https", "ftp"):
            return "malformed_url"
        if not parts.hostname:
            return "malformed_url"
        return None

    @staticmethod
    def _check_hash(ind: Indicator) -> Optional[str]:
        expected = HASH_LENGTHS[ind.type]
        if len(ind.value) != expected or not _HEX_RE.match(ind.value):
            return f"malformed_{ind.type.value}"
        return None

    @staticmethod
    def _check_registry_key(ind: Indicator) -> Optional[str]:
        value = ind.value
        if len(value) > MAX_REGISTRY_KEY_LENGTH or _CONTROL_RE.search(value):
            return "malformed_registry_key"
        hive = value.split("\\", 1)[0].rstrip(":")
        if hive not in _REGISTRY_HIVES:
            return "malformed_registry_key"
        return None

    @staticmethod
    def _check_process_name(ind: Indicator) -> Optional[str]:
        value = ind.value
        if not value or len(value) > MAX_PROCESS_NAME_LENGTH:
            return "malformed_process_name"
        if _CONTROL_RE.search(value) or "/" in value or "\\" in value:
            return "malformed_process_name"
        return None

    def _check_pattern(self, ind: Indicator) -> Optional[str]:
        value = ind.value
        if not value.strip():
            return "empty_pattern"
        if len(value) > self.max_pattern_length:
            return "pattern_too_long"
        if _CONTROL_RE.search(value.replace("\t", " ")):
            return "malformed_pattern"
        return None


def domain_problem(value: str) -> Optional[str]:
    """RFC-1035 style checks.  Returns a rejection reason or None."""
    if not value or len(value) > MAX_DOMAIN_LENGTH:
        return "malformed_domain"
    try:
        ascii_value = value.encode("idna").decode("ascii")
    except UnicodeError:
        return "malformed_domain"
    labels = ascii_value.split(".")
    if len(labels) < 2:
        return "malformed_domain"
    for label in labels:
        if not _LABEL_RE.match(label):
            return "malformed_domain"
    if not _TLD_RE.match(labels[-1]):
        return "malformed_domain"
    return None
