# Enrichment Module - Context Enrichment

from .cache import TTLCache
from .engine import EnrichmentEngine, EnrichmentResult
from .enrichers import DnsEnricher, Enricher, GeoEnricher, ReputationEnricher

__all__ = [
    "TTLCache",
    "EnrichmentEngine",
    "EnrichmentResult",
    "Enricher",
    "GeoEnricher",
    "DnsEnricher",
    "ReputationEnricher",
]
