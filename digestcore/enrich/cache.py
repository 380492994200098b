"""In-process TTL cache for fetched article text, keyed by canonical URL."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_TTL_SECONDS = 6 * 60 * 60


@dataclass(frozen=True)
class CacheEntry:
    text: str
    expires_at: float


class FullTextCache:
    """URL → text with lazy expiry.

    Expired entries are deleted when read and reported as a miss; ``cleanup``
    sweeps the rest once per enrichment run. ``clock`` is injectable so expiry
    can be tested without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, url: str) -> Optional[str]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[url]
            return None
        return entry.text

    def set(self, url: str, text: str) -> None:
        self._entries[url] = CacheEntry(text=text, expires_at=self._clock() + self.ttl_seconds)

    def cleanup(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [url for url, entry in self._entries.items() if now > entry.expires_at]
        for url in expired:
            del self._entries[url]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
