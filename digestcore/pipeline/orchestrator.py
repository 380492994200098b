"""Parallel feed ingestion for a channel, plus the registry of sources whose last fetch failed.

Coordinates concurrent fetching from all enabled sources, normalizes entries to
items with canonical URLs and content hashes, batch-inserts the new ones and
records an ``rss_fetch`` metric per source.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple

from digestcore.digest.models import FailedSourceInfo
from digestcore.observability.metrics import RSS_FETCH
from digestcore.storage.models import IngestResult, IngestSummary, Item, Source, utcnow
from digestcore.utils.text import clean_text, collapse_whitespace, truncate

if TYPE_CHECKING:
    from digestcore.observability.metrics import MetricsSink
    from digestcore.storage.db import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 5
DEFAULT_TIMEOUT = 30
DEFAULT_NEW_SOURCE_MAX_ITEMS = 3
SNIPPET_MAX_CHARS = 800


class Connector(Protocol):
    """Protocol for source connectors."""

    async def fetch(self, source: Source) -> List[Dict[str, Any]]:
        """Fetch raw items from a source. Returns list of dicts."""
        ...


class FailedSourceRegistry:
    """Last fetch failure per source, kept in process memory.

    Set when a source's fetch fails, cleared when it next succeeds.
    """

    def __init__(self) -> None:
        self._by_source: Dict[str, Tuple[str, FailedSourceInfo]] = {}

    def record(self, source: Source, reason: str) -> FailedSourceInfo:
        info = FailedSourceInfo(source_id=source.id, name=source.name, url=source.url, reason=reason)
        self._by_source[source.id] = (source.channel_id, info)
        return info

    def clear(self, source_id: str) -> None:
        self._by_source.pop(source_id, None)

    def for_channel(self, channel_id: str) -> List[FailedSourceInfo]:
        return [info for channel, info in self._by_source.values() if channel == channel_id]

    def __len__(self) -> int:
        return len(self._by_source)


class IngestOrchestrator:
    """Ingest every enabled source of a channel concurrently.

    Usage:
        orchestrator = IngestOrchestrator(db, RSSConnector(), metrics, registry)
        summary = await orchestrator.ingest_channel("general")
    """

    def __init__(
        self,
        db: "DatabaseManager",
        connector: Connector,
        metrics: Optional["MetricsSink"] = None,
        failed_sources: Optional[FailedSourceRegistry] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        request_timeout: float = DEFAULT_TIMEOUT,
        new_source_max_items: int = DEFAULT_NEW_SOURCE_MAX_ITEMS,
    ) -> None:
        self.db = db
        self.connector = connector
        self.metrics = metrics
        self.failed_sources = failed_sources if failed_sources is not None else FailedSourceRegistry()
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.new_source_max_items = new_source_max_items

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        db: "DatabaseManager",
        connector: Connector,
        metrics: Optional["MetricsSink"] = None,
        failed_sources: Optional[FailedSourceRegistry] = None,
    ) -> IngestOrchestrator:
        ingest = config.get("ingest", {}) or {}
        return cls(
            db,
            connector,
            metrics=metrics,
            failed_sources=failed_sources,
            max_concurrent=int(ingest.get("max_concurrent", DEFAULT_MAX_CONCURRENT)),
            request_timeout=float(ingest.get("request_timeout", DEFAULT_TIMEOUT)),
            new_source_max_items=int(ingest.get("new_source_max_items", DEFAULT_NEW_SOURCE_MAX_ITEMS)),
        )

    async def ingest_channel(self, channel_id: str) -> IngestSummary:
        """Fetch all enabled sources of ``channel_id``; one failing source never stops the others."""
        sources = await self.db.list_enabled_sources(channel_id)
        return await self.ingest_sources(sources)

    async def ingest_sources(self, sources: List[Source]) -> IngestSummary:
        summary = IngestSummary()
        if not sources:
            logger.warning("No sources to ingest")
            return summary

        t0 = time.monotonic()
        sem = asyncio.Semaphore(self.max_concurrent)
        results = await asyncio.gather(
            *(self._ingest_source(source, sem) for source in sources),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Ingest task failed: %s", result)
                summary.total_errors += 1
            elif isinstance(result, IngestResult):
                summary.add(result)

        summary.duration_seconds = time.monotonic() - t0
        logger.info(
            "Ingest complete: %d fetched, %d inserted, %d duplicates, %d errors in %.1fs",
            summary.total_fetched,
            summary.total_inserted,
            summary.total_duplicates,
            summary.total_errors,
            summary.duration_seconds,
        )
        return summary

    async def _ingest_source(self, source: Source, sem: asyncio.Semaphore) -> IngestResult:
        result = IngestResult(source_id=source.id)
        t0 = time.monotonic()

        async with sem:
            try:
                raw_items = await self._fetch_source(source)
                result.fetched = len(raw_items)

                items = self._normalize_items(raw_items, source)
                if source.last_fetched_at is None and len(items) > self.new_source_max_items:
                    # First fetch of a feed: only keep the newest few entries
                    items = items[: self.new_source_max_items]

                result.inserted = await self.db.batch_insert_items(items)
                result.duplicates = len(items) - result.inserted
                await self.db.mark_source_fetched(source.id)
                self.failed_sources.clear(source.id)

                logger.info(
                    "Source %s: fetched=%d, inserted=%d, dups=%d",
                    source.name, result.fetched, result.inserted, result.duplicates,
                )
                await self._record(source, "success", {"itemCount": result.inserted, "sourceUrl": source.url})
            except Exception as e:
                reason = str(e) or type(e).__name__
                result.error_message = reason
                result.errors = 1
                self.failed_sources.record(source, reason)
                logger.error("Source %s failed: %s", source.name, reason)
                await self._record(source, "failure", {"error": reason, "sourceUrl": source.url})

        result.duration_seconds = time.monotonic() - t0
        return result

    async def _fetch_source(self, source: Source) -> List[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(self.connector.fetch(source), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Source {source.name} fetch timed out after {self.request_timeout}s"
            )

    def _normalize_items(self, raw_items: List[Dict[str, Any]], source: Source) -> List[Item]:
        """Convert raw dicts to Items with canonical URLs and content hashes."""
        items: List[Item] = []
        now = utcnow()
        for raw in raw_items:
            url = raw.get("url", "")
            if not url:
                continue
            content = raw.get("content") or ""
            snippet = truncate(clean_text(content), SNIPPET_MAX_CHARS) if content else None
            items.append(
                Item.create(
                    source_id=source.id,
                    url=url,
                    title=collapse_whitespace(raw.get("title") or "") or "Untitled",
                    published_at=_parse_datetime(raw.get("published_at")),
                    content_snippet=snippet or None,
                    created_at=now,
                )
            )
        return items

    async def _record(self, source: Source, status: str, metadata: Dict[str, Any]) -> None:
        if self.metrics is not None:
            await self.metrics.record(RSS_FETCH, source.id, status, metadata)


def _parse_datetime(val: Any) -> Optional[datetime]:
    """Parse various datetime formats."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        return parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None
