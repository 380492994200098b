"""Metrics sink: persist observability events and log them."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from digestcore.storage.models import Metric, utcnow

if TYPE_CHECKING:
    from digestcore.storage.db import DatabaseManager

logger = logging.getLogger(__name__)

# Metric types
LLM_CALL = "llm_call"
RSS_FETCH = "rss_fetch"
DIGEST_RUN = "digest_run"
FULLTEXT_FETCH = "fulltext_fetch"


class MetricsSink(Protocol):
    """Anything that can record a metric. Must never raise."""

    async def record(
        self,
        type: str,
        operation: str,
        status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class MetricsRecorder:
    """Write metrics to the database (when one is attached) and to the log.

    A failed write is logged and swallowed so it never affects the caller.
    """

    def __init__(self, db: Optional["DatabaseManager"] = None) -> None:
        self.db = db

    async def record(
        self,
        type: str,
        operation: str,
        status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        metric = Metric(
            type=type,
            operation=operation,
            status=status,
            metadata=metadata or {},
            created_at=utcnow(),
        )
        try:
            if self.db is not None:
                await self.db.insert_metric(metric)
        except Exception as e:
            logger.error("Failed to record metric %s/%s: %s", type, operation, e)
            return
        logger.info(
            "Metric recorded: %s %s %s %s", type, operation, status, metadata or {},
        )


class InMemoryMetrics:
    """Metrics sink that keeps events in a list (handy for dry runs)."""

    def __init__(self) -> None:
        self.events: List[Metric] = []

    async def record(
        self,
        type: str,
        operation: str,
        status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(
            Metric(type=type, operation=operation, status=status, metadata=metadata or {}, created_at=utcnow())
        )

    def of_type(self, type: str) -> List[Metric]:
        return [m for m in self.events if m.type == type]
