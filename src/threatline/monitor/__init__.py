# Monitor Module - Pipeline Quality Metrics

from .quality import ALERT_NAMES, Alert, QualityMonitor

__all__ = ["Alert", "ALERT_NAMES", "QualityMonitor"]
