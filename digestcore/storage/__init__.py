"""Storage layer - SQLite in WAL mode with versioned migrations."""

from digestcore.storage.db import DatabaseManager
from digestcore.storage.models import DigestRecord, IngestResult, IngestSummary, Item, Metric, Source, Tenant

__all__ = [
    "DatabaseManager",
    "DigestRecord",
    "IngestResult",
    "IngestSummary",
    "Item",
    "Metric",
    "Source",
    "Tenant",
]
