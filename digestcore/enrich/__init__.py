"""Full-text enrichment: TTL cache and bounded fetcher."""

from digestcore.enrich.cache import FullTextCache
from digestcore.enrich.fetcher import BoundedFetcher, EnrichmentStats

__all__ = ["BoundedFetcher", "EnrichmentStats", "FullTextCache"]
