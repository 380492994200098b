"""Text cleanup helpers shared by enrichment, summarization and assembly."""

from __future__ import annotations

import re
import warnings
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

_WS_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_TERMINAL_PUNCTUATION = (".", "!", "?", "…", "。", "！", "？")

ELLIPSIS = "..."


def collapse_whitespace(value: str) -> str:
    return _WS_RE.sub(" ", value or "").strip()


def strip_html(value: str) -> str:
    """Return the text content of an HTML fragment. Plain text passes through."""
    if not value:
        return ""
    if "<" not in value:
        return value
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(value, "lxml")
    return soup.get_text(" ")


def clean_text(value: str) -> str:
    """Strip markup and collapse whitespace."""
    return collapse_whitespace(strip_html(value))


def truncate(value: str, max_length: int) -> str:
    """Cut to ``max_length`` characters, marking the cut with an ellipsis."""
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - len(ELLIPSIS))] + ELLIPSIS


def extractive_summary(text: str, max_chars: int) -> str:
    """First two sentences of the cleaned text, capped and closed with punctuation.

    Returns an empty string when there is no text to work with.
    """
    cleaned = clean_text(text)
    if not cleaned:
        return ""
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(cleaned) if s]
    selected = " ".join(sentences[:2]) or cleaned
    summary = truncate(selected, max_chars)
    if not summary.endswith(_TERMINAL_PUNCTUATION):
        summary = summary[: max(0, max_chars - len(ELLIPSIS))].rstrip() + ELLIPSIS
    return summary


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_range(start: datetime, end: datetime, tz: Optional[str] = None) -> str:
    """Human-readable digest window, in ``tz`` when it names a valid zone."""
    start, end = _as_utc(start), _as_utc(end)
    if tz:
        try:
            zone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            zone = None
        if zone is not None:
            fmt = "%Y-%m-%d %H:%M %Z"
            return f"{start.astimezone(zone).strftime(fmt)} - {end.astimezone(zone).strftime(fmt)}"
    return f"{start.isoformat()} - {end.isoformat()}"
