# Detection Module - Telemetry Matching & SIEM Push

from .engine import DetectionEngine, ScanReport, compute_severity, read_telemetry
from .extractor import Candidate, CandidateExtractor
from .siem import HttpSiemSink, MemorySiemSink, SiemDeliveryError, SiemSink

__all__ = [
    "Candidate",
    "CandidateExtractor",
    "DetectionEngine",
    "HttpSiemSink",
    "MemorySiemSink",
    "ScanReport",
    "SiemDeliveryError",
    "SiemSink",
    "compute_severity",
    "read_telemetry",
]
