"""Fetch an article page and pull out its main text. Used to enrich feed items whose entry has no body."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Optional

import aiohttp
from bs4 import BeautifulSoup

from digestcore.errors import FetchError, FetchTimeoutError
from digestcore.utils.text import collapse_whitespace, truncate

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

_NEXT_DATA_RE = re.compile(
    r'<script id="__NEXT_DATA__"[^>]*type="application/json"[^>]*>(.*?)</script>', re.DOTALL
)

CONTENT_SELECTORS = (
    "article",
    "[data-content]",
    "main",
    ".article-content",
    ".article_body",
    ".post-content",
    ".entry-content",
    ".content",
    ".markdown",
    ".prose",
    "[class*='articleBody']",
    "[class*='article-body']",
)


class ArticleFetcher:
    """HTTP article fetcher with structured-data-first extraction.

    Pass a ``session`` to reuse one connection pool across calls; otherwise a
    short-lived session is opened per request.
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.user_agent = user_agent
        self._session = session

    async def fetch_text(self, url: str, *, timeout: float, max_length: int) -> Optional[str]:
        """Return the page's main text, whitespace-collapsed and cut to ``max_length``.

        Raises FetchError on a non-200 response or network failure, and
        FetchTimeoutError when the request exceeds ``timeout`` seconds. Returns
        None when the page has nothing that looks like article text.
        """
        html = await self._get(url, timeout)
        body = extract_body_from_html(html)
        if not body:
            return None
        return truncate(collapse_whitespace(body), max_length)

    async def _get(self, url: str, timeout: float) -> str:
        headers = {"User-Agent": self.user_agent}
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            if self._session is not None:
                return await self._read(self._session, url, headers, client_timeout)
            async with aiohttp.ClientSession() as session:
                return await self._read(session, url, headers, client_timeout)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"Timed out fetching {url}") from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e

    @staticmethod
    async def _read(
        session: aiohttp.ClientSession,
        url: str,
        headers: dict,
        client_timeout: aiohttp.ClientTimeout,
    ) -> str:
        async with session.get(url, headers=headers, timeout=client_timeout) as resp:
            if resp.status != 200:
                raise FetchError(f"HTTP {resp.status} for {url}")
            return await resp.text()


def extract_body_from_html(html: str) -> Optional[str]:
    """Main content of a page. Prefer structured data, then semantic/class-based, then <body>."""
    if not html:
        return None
    body = _extract_from_next_data(html)
    if body:
        return body
    soup = BeautifulSoup(html, "lxml")
    body = _extract_from_json_ld(soup)
    if body:
        return body
    return _extract_from_selectors(soup)


def _extract_from_next_data(html: str) -> Optional[str]:
    """Article body from a Next.js __NEXT_DATA__ script."""
    m = _NEXT_DATA_RE.search(html)
    if not m:
        return None
    try:
        data = json.loads(m.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    props = (data.get("props") or {}).get("pageProps") or {}
    article = props.get("article")
    if isinstance(article, dict):
        body = article.get("body") or article.get("bodyHtml")
        if isinstance(body, str) and body.strip():
            return _html_to_text(body)
    for key in ("body", "content", "markdown", "html"):
        val = props.get(key)
        if isinstance(val, str) and val.strip():
            return _html_to_text(val)
    return None


def _is_article(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    kind = node.get("@type")
    kinds = kind if isinstance(kind, list) else [kind]
    return any(k in ("Article", "NewsArticle", "BlogPosting") for k in kinds)


def _extract_from_json_ld(soup: BeautifulSoup) -> Optional[str]:
    """schema.org Article ``articleBody`` from JSON-LD."""
    for script in soup.find_all("script", type="application/ld+json"):
        if not script.string:
            continue
        try:
            data = json.loads(script.string)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and "@graph" in data:
            data = data["@graph"]
        nodes = data if isinstance(data, list) else [data]
        for node in nodes:
            if _is_article(node):
                body = node.get("articleBody")
                if isinstance(body, str) and body.strip():
                    return body
    return None


def _extract_from_selectors(soup: BeautifulSoup) -> Optional[str]:
    for tag in soup.find_all(["script", "style", "nav", "header", "footer", "noscript"]):
        tag.decompose()

    for sel in CONTENT_SELECTORS:
        el = soup.select_one(sel)
        if el:
            text = el.get_text(separator="\n", strip=True)
            if len(text) > 100:
                return text

    body = soup.find("body")
    if body:
        text = body.get_text(separator="\n", strip=True)
        if len(text) > 200:
            return text
    return None


def _html_to_text(value: str) -> str:
    if "<" not in value:
        return value
    return BeautifulSoup(value, "lxml").get_text(separator="\n", strip=True)
