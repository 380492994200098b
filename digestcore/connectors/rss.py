"""RSS/Atom connector using feedparser with retry."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import feedparser
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from digestcore.connectors.content_fetcher import DEFAULT_USER_AGENT

if TYPE_CHECKING:
    from digestcore.storage.models import Source

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""


def _parse_entry(entry: Any) -> Optional[Dict[str, Any]]:
    """Convert a feedparser entry to a raw item dict."""
    link = entry.get("link")
    if not link and entry.get("links"):
        link = entry["links"][0].get("href")
    if not link:
        return None
    content = entry.get("summary") or entry.get("description") or ""
    if not content and entry.get("content"):
        content = entry["content"][0].get("value", "")
    return {
        "url": link,
        "title": _text(entry.get("title")) or "Untitled",
        "content": _text(content),
        "published_at": entry.get("published") or entry.get("updated"),
    }


class RSSConnector:
    """Fetch items from a source's RSS/Atom feed."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self.user_agent = user_agent

    @retry(
        retry=retry_if_exception_type((OSError, ConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def fetch(self, source: "Source") -> List[Dict[str, Any]]:
        """Fetch and parse the feed. Parsing runs in an executor to avoid blocking."""
        if not source.url:
            logger.warning("RSS source %s has no url", source.id)
            return []

        def _parse() -> List[Dict[str, Any]]:
            feed = feedparser.parse(
                source.url,
                request_headers={"User-Agent": self.user_agent},
            )
            entries = getattr(feed, "entries", [])
            # A bozo feed that still yielded entries is usable
            if getattr(feed, "bozo", False) and feed.get("bozo_exception") and not entries:
                raise feed.bozo_exception
            status = feed.get("status")
            if status is not None and status >= 400 and not entries:
                # Only server errors are worth retrying
                exc_type = ConnectionError if status >= 500 else ValueError
                raise exc_type(f"HTTP {status} fetching {source.url}")
            items: List[Dict[str, Any]] = []
            for entry in entries:
                row = _parse_entry(entry)
                if row:
                    items.append(row)
            return items

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _parse)
