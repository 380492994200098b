"""Types flowing through a digest build."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class FallbackReason(str, Enum):
    """Why a digest's summaries did not come purely from the LLM."""

    LLM_DISABLED = "llm-disabled"
    LLM_MISSING_CONFIG = "llm-missing-config"
    LLM_NO_FULLTEXT = "llm-no-fulltext"
    LLM_EMPTY = "llm-empty"
    LLM_FAILED = "llm-failed"
    LLM_PARTIAL = "llm-partial"


class BuildStage(str, Enum):
    QUEUED = "queued"
    ENRICHING = "enriching"
    SUMMARIZING = "summarizing"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ContentItem:
    """Working copy of a feed item for one build; mutated by each stage."""

    source_name: str
    title: str
    url: str
    published_at: Optional[datetime] = None
    content: str = ""
    content_snippet: Optional[str] = None
    summary: str = ""
    has_content: bool = False


@dataclass(frozen=True)
class DigestItem:
    source_name: str
    title: str
    url: str
    summary: str
    published_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_name": self.source_name,
            "title": self.title,
            "url": self.url,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "summary": self.summary,
        }


@dataclass(frozen=True)
class FailedSourceInfo:
    source_id: str
    name: str
    url: str
    reason: str


@dataclass(frozen=True)
class SummaryMeta:
    llm_enabled: bool
    llm_used: bool = False
    llm_items: int = 0
    skipped_llm_items: int = 0
    used_fulltext_count: int = 0
    fallback_reason: Optional[FallbackReason] = None
    missing_content_sources: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "llm_enabled": self.llm_enabled,
            "llm_used": self.llm_used,
            "llm_items": self.llm_items,
            "skipped_llm_items": self.skipped_llm_items,
            "used_fulltext_count": self.used_fulltext_count,
            "fallback_reason": self.fallback_reason.value if self.fallback_reason else None,
            "missing_content_sources": list(self.missing_content_sources),
        }


@dataclass(frozen=True)
class DigestResult:
    channel_id: str
    window_start: datetime
    window_end: datetime
    items: Tuple[DigestItem, ...]
    updated_sources: Tuple[str, ...]
    failed_sources: Tuple[FailedSourceInfo, ...]
    summary_meta: SummaryMeta
    overview_text: str
    digest_id: Optional[int] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "items": [item.to_dict() for item in self.items],
            "updated_sources": list(self.updated_sources),
            "failed_sources": [
                {"source_id": f.source_id, "name": f.name, "url": f.url, "reason": f.reason}
                for f in self.failed_sources
            ],
            "summary_meta": self.summary_meta.to_dict(),
            "overview_text": self.overview_text,
            "digest_id": self.digest_id,
        }
