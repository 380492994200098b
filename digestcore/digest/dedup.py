"""URL canonicalization and order-preserving dedup of digest items."""

from __future__ import annotations

import logging
from typing import Iterable, List, Protocol, TypeVar
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

logger = logging.getLogger(__name__)

_STRIP_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "ref", "fbclid", "gclid",
}


def canonical_url(url: str) -> str:
    """Normalize a URL for dedup comparison (strip tracking params, fragments, etc.)."""
    try:
        parsed = urlparse(url.strip())
        # Drop fragment, lowercase scheme and host
        scheme = parsed.scheme.lower()
        netloc = parsed.netloc.lower().rstrip(".")
        path = parsed.path.rstrip("/") or "/"
        pairs = [
            (k, v)
            for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if k.lower() not in _STRIP_PARAMS
        ]
        query = urlencode(sorted(pairs))
        return urlunparse((scheme, netloc, path, parsed.params, query, ""))
    except ValueError:
        return url.strip()


class _HasUrl(Protocol):
    url: str


T = TypeVar("T", bound=_HasUrl)


def dedupe_items(items: Iterable[T]) -> List[T]:
    """Drop later items whose canonical URL was already seen. Order is kept."""
    seen: set[str] = set()
    unique: List[T] = []
    dropped = 0
    for item in items:
        key = canonical_url(item.url)
        if key in seen:
            dropped += 1
            continue
        seen.add(key)
        unique.append(item)
    if dropped:
        logger.debug("Dedup dropped %d duplicate item(s)", dropped)
    return unique
