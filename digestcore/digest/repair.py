"""Tolerant parsing of LLM summary responses.

Models asked for ``{"items": [{"url": ..., "summary": ...}]}`` often wrap it in a
code fence, leave unescaped quotes or raw newlines inside strings, add trailing
commas or stop mid-object when they hit the token limit. Recovery runs in tiers
and stops at the first that yields something:

1. the extracted JSON block as-is
2. the block with string contents and trailing commas repaired
3. the repaired block with open strings, arrays and objects closed
4. a per-URL regex scan for ``"summary"`` values
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from digestcore.errors import ParseFailure
from digestcore.utils.text import clean_text, truncate

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SUMMARY_KEY_RE = re.compile(r'"summary"\s*:\s*"', re.IGNORECASE)

# A quote inside a string only closes it when followed by one of these
_STRING_TERMINATORS = (",", "}", "]", ":")


def extract_json_block(content: str) -> Optional[str]:
    """The fenced block if there is one, else the text; cut from the first ``{`` to the last ``}``.

    If no ``}`` follows the first ``{`` the block runs to the end (truncated output).
    """
    fenced = _FENCE_RE.search(content)
    raw = (fenced.group(1) if fenced else "") or content
    start = raw.find("{")
    if start < 0:
        return None
    end = raw.rfind("}")
    return raw[start : end + 1] if end > start else raw[start:]


def _next_non_space(value: str, index: int) -> Optional[str]:
    for ch in value[index:]:
        if not ch.isspace():
            return ch
    return None


def repair_json(value: str) -> str:
    """Escape stray quotes and raw newlines inside strings, drop trailing commas."""
    out: List[str] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(value):
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == "\\":
            out.append(ch)
            escaped = True
            continue
        if ch == '"':
            if not in_string:
                in_string = True
                out.append(ch)
            elif _next_non_space(value, i + 1) in _STRING_TERMINATORS:
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue
        if in_string and ch in ("\n", "\r"):
            out.append("\\n")
            continue
        out.append(ch)

    return _TRAILING_COMMA_RE.sub(r"\1", "".join(out))


def close_open_structures(value: str) -> str:
    """Close a dangling string, then any open arrays, then any open objects."""
    in_string = False
    escaped = False
    open_curly = 0
    open_square = 0

    for ch in value:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            open_curly += 1
        elif ch == "}":
            open_curly = max(0, open_curly - 1)
        elif ch == "[":
            open_square += 1
        elif ch == "]":
            open_square = max(0, open_square - 1)

    if in_string:
        value += '"'
    return value + "]" * open_square + "}" * open_curly


def parse_json_block(content: str) -> Optional[Any]:
    """Tiers 1-3. Returns the decoded value or None."""
    primary = extract_json_block(content)
    if primary is None:
        return None
    repaired = repair_json(primary)
    for tier, candidate in enumerate((primary, repaired, close_open_structures(repaired)), start=1):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if tier > 1:
            logger.debug("LLM response parsed after repair (tier %d)", tier)
        return parsed
    return None


def read_json_string(value: str, start: int) -> str:
    """Read a JSON string body starting at ``start`` up to the first unescaped quote.

    ``\\n`` and ``\\t`` decode to newline and tab; any other escaped character is
    taken literally. An unterminated string runs to the end of ``value``.
    """
    out: List[str] = []
    escaped = False
    for ch in value[start:]:
        if escaped:
            out.append("\n" if ch == "n" else "\t" if ch == "t" else ch)
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            break
        out.append(ch)
    return "".join(out)


def clean_summary(value: str, max_chars: int) -> str:
    return truncate(clean_text(value), max_chars)


def extract_summaries_fallback(content: str, urls: Iterable[str], max_chars: int) -> Dict[str, str]:
    """Tier 4: find ``"url": "<url>"`` for each URL and read the next ``"summary"`` value."""
    summaries: Dict[str, str] = {}
    for url in urls:
        url_match = re.search(r'"url"\s*:\s*"' + re.escape(url) + '"', content, re.IGNORECASE)
        if not url_match:
            continue
        after = content[url_match.end():]
        summary_match = _SUMMARY_KEY_RE.search(after)
        if not summary_match:
            continue
        cleaned = clean_summary(read_json_string(after, summary_match.end()), max_chars)
        if cleaned:
            summaries[url] = cleaned
    return summaries


def summaries_from_parsed(parsed: Any, max_chars: int) -> Dict[str, str]:
    """Pull url → cleaned summary pairs out of a decoded response."""
    summaries: Dict[str, str] = {}
    if not isinstance(parsed, dict):
        return summaries
    items = parsed.get("items")
    if not isinstance(items, list):
        return summaries
    for entry in items:
        if not isinstance(entry, dict):
            continue
        url, summary = entry.get("url"), entry.get("summary")
        if not isinstance(url, str) or not isinstance(summary, str) or not url or not summary:
            continue
        cleaned = clean_summary(summary, max_chars)
        if cleaned:
            summaries[url] = cleaned
    return summaries


def recover_summaries(content: str, urls: Iterable[str], max_chars: int) -> Dict[str, str]:
    """Run the full recovery chain on an LLM response.

    Returns the summaries found (possibly none, if the response parsed but held
    no usable entries). Raises ParseFailure when no tier could make sense of it.
    """
    urls = list(urls)
    parsed = parse_json_block(content)
    if isinstance(parsed, dict):
        return summaries_from_parsed(parsed, max_chars)

    extracted = extract_summaries_fallback(content, urls, max_chars)
    if extracted:
        logger.debug("LLM response recovered by regex fallback: %d/%d", len(extracted), len(urls))
        return extracted
    raise ParseFailure("Could not parse LLM response", raw=content)
