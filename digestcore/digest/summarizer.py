"""Per-item summaries for a digest: batched LLM calls with a local extractive fallback."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Tuple

from digestcore.digest.models import ContentItem, FallbackReason, SummaryMeta
from digestcore.digest.repair import recover_summaries
from digestcore.enrich.fetcher import is_error_page
from digestcore.errors import ParseFailure, QuotaExceededError
from digestcore.observability.metrics import LLM_CALL
from digestcore.utils.text import clean_text, extractive_summary, truncate

if TYPE_CHECKING:
    from digestcore.config import DigestSettings, LLMSettings
    from digestcore.observability.metrics import MetricsSink

logger = logging.getLogger(__name__)

DEBUG_PAYLOAD_CHARS = 800

DEFAULT_SUMMARY_INSTRUCTION = (
    "In one sentence, say why this item is worth attention or what the debate is about."
)

_DEGRADED_REASONS = (
    FallbackReason.LLM_EMPTY,
    FallbackReason.LLM_FAILED,
    FallbackReason.LLM_PARTIAL,
)


class LLMService(Protocol):
    async def call(
        self,
        tenant_id: Optional[str],
        system_prompt: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        operation: str = "llm",
    ) -> str:
        ...


def chunk(items: List[ContentItem], size: int) -> List[List[ContentItem]]:
    if size <= 0:
        return [items]
    return [items[i : i + size] for i in range(0, len(items), size)]


class DigestSummarizer:
    """Decide which items go to the LLM, call it batch by batch, fill in every summary.

    Each batch is isolated: one that raises counts as an error, one that yields
    nothing (quota exhausted, empty or unparseable response) counts as empty.
    Items the LLM did not cover fall back to an extractive summary, and items
    with no content get the missing-content notice.
    """

    def __init__(
        self,
        settings: "DigestSettings",
        llm_settings: "LLMSettings",
        llm: Optional[LLMService] = None,
        metrics: Optional["MetricsSink"] = None,
        summary_instruction: str = DEFAULT_SUMMARY_INSTRUCTION,
    ) -> None:
        self.settings = settings
        self.llm_settings = llm_settings
        self.llm = llm
        self.metrics = metrics
        self.summary_instruction = summary_instruction

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def summarize(
        self,
        items: List[ContentItem],
        *,
        tenant_id: Optional[str] = None,
        used_fulltext_count: int = 0,
        operation: str = "digest",
    ) -> SummaryMeta:
        """Set ``summary`` on every item in place and report how it went."""
        candidates, missing_sources = self.select_candidates(items)

        llm_summaries: Dict[str, str] = {}
        llm_used = False
        reason: Optional[FallbackReason] = None

        if not self.llm_settings.enabled:
            reason = FallbackReason.LLM_DISABLED
        elif not self.llm_settings.configured or self.llm is None:
            reason = FallbackReason.LLM_MISSING_CONFIG
        elif not candidates:
            reason = FallbackReason.LLM_NO_FULLTEXT
        else:
            llm_summaries, any_error, any_empty = await self._run_batches(
                candidates, tenant_id, operation
            )
            if llm_summaries:
                llm_used = True
                if any_error or any_empty:
                    reason = FallbackReason.LLM_PARTIAL
            else:
                reason = FallbackReason.LLM_FAILED if any_error else FallbackReason.LLM_EMPTY

        for item in items:
            item.summary = self._summary_for(item, llm_summaries)

        meta = SummaryMeta(
            llm_enabled=self.llm_settings.enabled,
            llm_used=llm_used,
            llm_items=len(candidates),
            skipped_llm_items=len(items) - len(candidates),
            used_fulltext_count=used_fulltext_count,
            fallback_reason=reason,
            missing_content_sources=tuple(missing_sources),
        )
        logger.info(
            "Summaries: %d items, %d LLM-eligible, llm_used=%s, fallback=%s",
            len(items), meta.llm_items, llm_used, reason.value if reason else None,
        )
        if reason in _DEGRADED_REASONS and self.metrics is not None:
            await self.metrics.record(LLM_CALL, operation, "degraded", meta.to_dict())
        return meta

    def select_candidates(self, items: List[ContentItem]) -> Tuple[List[ContentItem], List[str]]:
        """Mark ``has_content`` on each item; return the LLM-eligible ones and sources lacking content.

        Items without fetched text may still qualify through their feed snippet
        if it is long enough and is not an error page.
        """
        candidates: List[ContentItem] = []
        missing: List[str] = []
        for item in items:
            if not item.content and item.content_snippet:
                cleaned = clean_text(item.content_snippet)
                if len(cleaned) >= self.settings.min_content_chars_for_llm and not is_error_page(cleaned):
                    item.content = truncate(cleaned, self.settings.fulltext_max_chars)
            item.has_content = bool(item.content)
            if item.has_content:
                candidates.append(item)
            elif item.source_name not in missing:
                missing.append(item.source_name)
        return candidates, missing

    # ------------------------------------------------------------------
    # LLM batches
    # ------------------------------------------------------------------

    async def _run_batches(
        self, candidates: List[ContentItem], tenant_id: Optional[str], operation: str
    ) -> Tuple[Dict[str, str], bool, bool]:
        summaries: Dict[str, str] = {}
        any_error = False
        any_empty = False
        for batch in chunk(candidates, self.settings.llm_batch_size):
            try:
                result = await self._summarize_batch(batch, tenant_id, operation)
            except Exception as e:
                any_error = True
                logger.warning("LLM batch of %d failed: %s", len(batch), e)
                continue
            if not result:
                any_empty = True
                continue
            summaries.update(result)
        return summaries, any_error, any_empty

    async def _summarize_batch(
        self, batch: List[ContentItem], tenant_id: Optional[str], operation: str
    ) -> Optional[Dict[str, str]]:
        """Summaries for one batch, or None when the batch produced nothing usable."""
        assert self.llm is not None
        if not tenant_id:
            logger.debug("No tenant for LLM call; skipping batch")
            return None

        max_chars = self.settings.item_summary_max_chars
        try:
            content = await self.llm.call(
                tenant_id,
                self.build_system_prompt(),
                [{"role": "user", "content": self.build_user_prompt(batch)}],
                temperature=self.llm_settings.temperature,
                max_tokens=self.llm_settings.max_tokens,
                operation=operation,
            )
        except QuotaExceededError as e:
            logger.warning("%s", e)
            await self._record_degraded(operation, {"error": str(e), "tenant": tenant_id})
            return None

        if not content:
            logger.debug("LLM returned an empty response for %d item(s)", len(batch))
            return None
        logger.debug("LLM response: %s", truncate(content, DEBUG_PAYLOAD_CHARS))

        try:
            summaries = recover_summaries(content, [item.url for item in batch], max_chars)
        except ParseFailure as e:
            logger.warning("Unparseable LLM response for %d item(s): %s", len(batch), e)
            await self._record_degraded(
                operation,
                {"error": str(e), "raw": truncate(e.raw, DEBUG_PAYLOAD_CHARS), "itemCount": len(batch)},
            )
            return None

        logger.debug("LLM summaries: requested=%d returned=%d", len(batch), len(summaries))
        return summaries or None

    async def _record_degraded(self, operation: str, metadata: Dict[str, Any]) -> None:
        if self.metrics is not None:
            await self.metrics.record(LLM_CALL, operation, "degraded", metadata)

    # ------------------------------------------------------------------
    # Prompts and fallbacks
    # ------------------------------------------------------------------

    def build_system_prompt(self) -> str:
        return (
            "Return JSON only (no markdown fences). Escape newlines in strings as \\n. "
            "Summarize items using provided content. Do not repeat titles. "
            f"For each item summary: {self.summary_instruction} "
            "Keep each summary under the configured character limit."
        )

    def build_user_prompt(self, batch: List[ContentItem]) -> str:
        payload = [
            {"url": item.url, "title": item.title, "source": item.source_name, "content": item.content}
            for item in batch
        ]
        return (
            'Output format:\n{\n  "items": [{"url":"...","summary":"..."}]\n}\n\n'
            f"Summary instruction: {self.summary_instruction}\n"
            f"Summary max chars: {self.settings.item_summary_max_chars}\n\n"
            f"Items:\n{json.dumps(payload, ensure_ascii=False)}"
        )

    def _summary_for(self, item: ContentItem, llm_summaries: Dict[str, str]) -> str:
        notice = self.settings.missing_content_notice
        if not item.has_content:
            return notice
        summary = llm_summaries.get(item.url, "")
        if not summary:
            summary = extractive_summary(item.content, self.settings.item_summary_max_chars)
        return summary or notice
