"""Digest generator: load window → enrich → summarize → dedup → overview → persist."""

from __future__ import annotations

import dataclasses
import logging
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol, Sequence, Tuple

from digestcore.digest.dedup import dedupe_items
from digestcore.digest.models import (
    BuildStage,
    ContentItem,
    DigestItem,
    DigestResult,
    FailedSourceInfo,
)
from digestcore.errors import PersistenceError
from digestcore.observability.metrics import DIGEST_RUN
from digestcore.storage.models import utcnow
from digestcore.utils.text import format_range

if TYPE_CHECKING:
    from digestcore.config import DigestSettings
    from digestcore.digest.queue import BuildJob
    from digestcore.digest.summarizer import DigestSummarizer
    from digestcore.enrich.fetcher import BoundedFetcher
    from digestcore.observability.metrics import MetricsSink
    from digestcore.storage.models import DigestRecord, Item, Source

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
MAX_LISTED_UPDATED = 10
MAX_LISTED_FAILED = 5


class ItemStore(Protocol):
    async def list_enabled_sources(self, channel_id: str) -> List["Source"]:
        ...

    async def list_items_in_window(
        self, source_id: str, start: datetime, end: datetime, max_count: int
    ) -> List["Item"]:
        ...


class DigestStore(Protocol):
    async def create_digest_record(
        self, channel_id: str, start: datetime, end: datetime, content: str
    ) -> "DigestRecord":
        ...

    async def get_last_digest(self, channel_id: str) -> Optional["DigestRecord"]:
        ...


class FailedSourceLookup(Protocol):
    def for_channel(self, channel_id: str) -> List[FailedSourceInfo]:
        ...


class DigestStorage(ItemStore, DigestStore, Protocol):
    pass


def build_overview_text(
    range_text: str,
    failed_sources: Sequence[FailedSourceInfo],
    updated_sources: Sequence[str],
    item_count: int,
) -> str:
    """Plain-text header for a digest: window, updated sources, failed sources."""
    lines = [f"Digest window: {range_text}"]
    if item_count == 0:
        lines.append("No new items today.")
    elif updated_sources:
        listed = ", ".join(updated_sources[:MAX_LISTED_UPDATED])
        extra = len(updated_sources) - MAX_LISTED_UPDATED
        lines.append(f"Updated sources: {listed}{f' +{extra}' if extra > 0 else ''}")
    if failed_sources:
        listed = ", ".join(f"{f.name} ({f.reason})" for f in failed_sources[:MAX_LISTED_FAILED])
        extra = len(failed_sources) - MAX_LISTED_FAILED
        lines.extend(["", f"Failed sources: {listed}{f' +{extra}' if extra > 0 else ''}"])
    return "\n".join(lines)


class DigestGenerator:
    """Builds and persists one channel's digest for a time window.

    Usage:
        generator = DigestGenerator(settings, db, fetcher, summarizer, metrics, registry)
        result = await generator.create_digest("general", start, end, tenant_id="t1")
    """

    def __init__(
        self,
        settings: "DigestSettings",
        store: DigestStorage,
        fetcher: Optional["BoundedFetcher"],
        summarizer: "DigestSummarizer",
        metrics: Optional["MetricsSink"] = None,
        failed_sources: Optional[FailedSourceLookup] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.metrics = metrics
        self.failed_sources = failed_sources
        self._clock = clock

    async def resolve_digest_window(self, channel_id: str) -> Tuple[datetime, datetime]:
        """Window from the end of the channel's last digest (or 24h ago) until now."""
        end = self._clock()
        last = await self.store.get_last_digest(channel_id)
        start = last.range_end if last is not None else end - DEFAULT_WINDOW
        return start, end

    async def build_digest(
        self,
        channel_id: str,
        window_start: datetime,
        window_end: datetime,
        tenant_id: Optional[str] = None,
    ) -> DigestResult:
        """Assemble a digest without persisting it."""
        t0 = time.monotonic()
        self._stage(channel_id, BuildStage.ENRICHING, t0)
        try:
            failed = self.failed_sources.for_channel(channel_id) if self.failed_sources else []
            failed_ids = {f.source_id for f in failed}

            sources = await self.store.list_enabled_sources(channel_id)
            items: List[ContentItem] = []
            updated_sources: List[str] = []
            for source in sources:
                rows = await self.store.list_items_in_window(
                    source.id, window_start, window_end, self.settings.max_items_per_source
                )
                if not rows:
                    continue
                if source.id not in failed_ids:
                    updated_sources.append(source.name)
                items.extend(
                    ContentItem(
                        source_name=source.name,
                        title=row.title,
                        url=row.url,
                        published_at=row.published_at,
                        content_snippet=row.content_snippet,
                    )
                    for row in rows
                )

            limited = items[: self.settings.digest_max_items]
            logger.info(
                "Digest %s: %d sources, %d items in window (%d kept)",
                channel_id, len(sources), len(items), len(limited),
            )

            used_fulltext = 0
            if self.fetcher is not None:
                stats = await self.fetcher.enrich(limited, operation=channel_id)
                used_fulltext = stats.used_fulltext_count

            self._stage(channel_id, BuildStage.SUMMARIZING, t0)
            meta = await self.summarizer.summarize(
                limited,
                tenant_id=tenant_id,
                used_fulltext_count=used_fulltext,
                operation=channel_id,
            )

            self._stage(channel_id, BuildStage.ASSEMBLING, t0)
            digest_items = dedupe_items(
                DigestItem(
                    source_name=item.source_name,
                    title=item.title,
                    url=item.url,
                    summary=item.summary,
                    published_at=item.published_at,
                )
                for item in limited
            )
            overview = build_overview_text(
                format_range(window_start, window_end, self.settings.timezone),
                failed,
                updated_sources,
                len(digest_items),
            )
        except Exception:
            self._stage(channel_id, BuildStage.FAILED, t0)
            raise

        self._stage(channel_id, BuildStage.DONE, t0)
        return DigestResult(
            channel_id=channel_id,
            window_start=window_start,
            window_end=window_end,
            items=tuple(digest_items),
            updated_sources=tuple(updated_sources),
            failed_sources=tuple(failed),
            summary_meta=meta,
            overview_text=overview,
        )

    async def create_digest(
        self,
        channel_id: str,
        window_start: datetime,
        window_end: datetime,
        tenant_id: Optional[str] = None,
    ) -> DigestResult:
        """Build, persist and record a ``digest_run`` metric. Failures are recorded and re-raised."""
        try:
            result = await self.build_digest(channel_id, window_start, window_end, tenant_id)
            try:
                record = await self.store.create_digest_record(
                    channel_id, window_start, window_end, result.overview_text
                )
            except Exception as e:
                raise PersistenceError(f"Failed to save digest for {channel_id}: {e}") from e

            await self._record(channel_id, "success", {"itemCount": len(result.items)})
            return dataclasses.replace(result, digest_id=record.id)
        except Exception as e:
            logger.error("Digest %s failed: %s", channel_id, e)
            await self._record(channel_id, "failure", {"error": str(e)})
            raise

    async def run_job(self, job: "BuildJob") -> DigestResult:
        """Queue processor: one job → one persisted digest."""
        return await self.create_digest(
            job.channel_id, job.window_start, job.window_end, job.tenant_id
        )

    async def _record(self, channel_id: str, status: str, metadata: dict) -> None:
        if self.metrics is not None:
            await self.metrics.record(DIGEST_RUN, channel_id, status, metadata)

    @staticmethod
    def _stage(channel_id: str, stage: BuildStage, t0: float) -> None:
        logger.info(
            "Digest %s: %s (elapsed=%dms)",
            channel_id, stage.value, int((time.monotonic() - t0) * 1000),
        )
