"""Full-text enrichment with a concurrency cap and a hard per-call timeout."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

from digestcore.config import DEFAULT_SKIP_HOSTS
from digestcore.enrich.cache import FullTextCache
from digestcore.errors import FetchError, FetchTimeoutError, ProviderErrorPage
from digestcore.observability.metrics import FULLTEXT_FETCH

if TYPE_CHECKING:
    from digestcore.config import DigestSettings
    from digestcore.digest.models import ContentItem
    from digestcore.observability.metrics import MetricsSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 3
DEFAULT_TIMEOUT = 8.0
DEFAULT_MAX_LENGTH = 2000

# Pages that came back 200 but are really a JS wall or an outage notice
ERROR_PAGE_PHRASES = (
    "something went wrong",
    "privacy related extensions",
    "enable javascript",
    "try again later",
    "temporarily unavailable",
)


class TextFetcher(Protocol):
    async def fetch_text(self, url: str, *, timeout: float, max_length: int) -> Optional[str]:
        ...


def is_error_page(text: str) -> bool:
    lower = text.lower()
    return any(phrase in lower for phrase in ERROR_PAGE_PHRASES)


def is_skippable_url(url: str, skip_hosts: Iterable[str] = DEFAULT_SKIP_HOSTS) -> bool:
    """True for hosts that only render client-side (plain fetch is pointless)."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return host in set(skip_hosts)


@dataclass
class EnrichmentStats:
    fetched: int = 0
    cache_hits: int = 0
    skipped: int = 0
    empty: int = 0
    failed: int = 0
    timed_out: int = 0
    error_pages: int = 0

    @property
    def used_fulltext_count(self) -> int:
        return self.fetched + self.cache_hits

    @property
    def degraded(self) -> bool:
        return bool(self.failed or self.timed_out or self.error_pages)


class BoundedFetcher:
    """Fill ``ContentItem.content`` from the cache or the network.

    At most ``max_concurrent`` fetches run at once. A failure of any kind on one
    item leaves that item without content and never touches the others.
    """

    def __init__(
        self,
        fetcher: TextFetcher,
        cache: FullTextCache,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = DEFAULT_TIMEOUT,
        max_length: int = DEFAULT_MAX_LENGTH,
        skip_hosts: Iterable[str] = DEFAULT_SKIP_HOSTS,
        metrics: Optional["MetricsSink"] = None,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.max_length = max_length
        self.skip_hosts = frozenset(h.lower() for h in skip_hosts)
        self.metrics = metrics

    @classmethod
    def from_settings(
        cls,
        settings: "DigestSettings",
        fetcher: TextFetcher,
        cache: FullTextCache,
        metrics: Optional["MetricsSink"] = None,
    ) -> BoundedFetcher:
        return cls(
            fetcher,
            cache,
            max_concurrent=settings.fulltext_concurrency,
            timeout=settings.fulltext_timeout_seconds,
            max_length=settings.fulltext_max_chars,
            skip_hosts=settings.skip_hosts,
            metrics=metrics,
        )

    def is_skippable(self, url: str) -> bool:
        return is_skippable_url(url, self.skip_hosts)

    async def enrich(self, items: List["ContentItem"], operation: str = "digest") -> EnrichmentStats:
        """Enrich items in place. Returns per-outcome counts."""
        stats = EnrichmentStats()
        if not items:
            return stats

        expired = self.cache.cleanup()
        if expired:
            logger.debug("Dropped %d expired full-text cache entries", expired)

        sem = asyncio.Semaphore(self.max_concurrent)
        await asyncio.gather(*(self._enrich_one(item, sem, stats) for item in items))

        logger.info(
            "Full text: %d fetched, %d cached, %d skipped, %d failed, %d timed out, %d error pages",
            stats.fetched, stats.cache_hits, stats.skipped, stats.failed,
            stats.timed_out, stats.error_pages,
        )
        if self.metrics is not None:
            await self.metrics.record(
                FULLTEXT_FETCH,
                operation,
                "degraded" if stats.degraded else "success",
                {**asdict(stats), "itemCount": len(items)},
            )
        return stats

    async def _enrich_one(
        self, item: "ContentItem", sem: asyncio.Semaphore, stats: EnrichmentStats
    ) -> None:
        if item.content:
            return
        if self.is_skippable(item.url):
            stats.skipped += 1
            return

        cached = self.cache.get(item.url)
        if cached:
            item.content = cached
            stats.cache_hits += 1
            return

        async with sem:
            try:
                text = await asyncio.wait_for(
                    self.fetcher.fetch_text(item.url, timeout=self.timeout, max_length=self.max_length),
                    timeout=self.timeout,
                )
                if text and is_error_page(text):
                    raise ProviderErrorPage(f"Provider error page at {item.url}")
            except (asyncio.TimeoutError, FetchTimeoutError):
                stats.timed_out += 1
                logger.warning("Full text fetch timed out after %.1fs: %s", self.timeout, item.url)
                return
            except ProviderErrorPage as e:
                stats.error_pages += 1
                logger.debug("%s", e)
                return
            except FetchError as e:
                stats.failed += 1
                logger.warning("Full text fetch failed for %s: %s", item.url, e)
                return
            except Exception as e:
                stats.failed += 1
                logger.warning("Full text fetch error for %s: %s", item.url, e)
                return

        if not text:
            stats.empty += 1
            return

        self.cache.set(item.url, text)
        item.content = text
        stats.fetched += 1
