"""LLM call service: provider dispatch, retry, timeout and soft quota."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from digestcore.errors import LLMNotConfiguredError
from digestcore.observability.metrics import LLM_CALL
from digestcore.utils.retry import with_retry_and_metrics

if TYPE_CHECKING:
    from digestcore.config import LLMSettings
    from digestcore.llm.quota import QuotaStore
    from digestcore.observability.metrics import MetricsSink

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_URL = "http://localhost:11434/v1"


class LLMClient:
    """Call the configured provider for one tenant.

    Providers: ``openai_compat`` (any OpenAI-compatible endpoint), ``local``
    (Ollama's OpenAI-compatible API) and ``anthropic``. SDKs are imported on
    first use so a deployment only needs the one it talks to.
    """

    def __init__(
        self,
        settings: "LLMSettings",
        metrics: "MetricsSink",
        quota: Optional["QuotaStore"] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics
        self.quota = quota
        self._client: Any = None

    async def call(
        self,
        tenant_id: Optional[str],
        system_prompt: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        operation: str = "llm",
    ) -> str:
        """Return the response text. Raises QuotaExceededError before calling when over budget."""
        if not self.settings.configured:
            raise LLMNotConfiguredError(
                f"LLM provider {self.settings.provider!r} is missing a model or API key"
            )
        if self.quota is not None and tenant_id:
            await self.quota.check(tenant_id)

        temperature = self.settings.temperature if temperature is None else temperature
        max_tokens = max_tokens or self.settings.max_tokens

        async def _attempt() -> str:
            return await asyncio.wait_for(
                self._dispatch(system_prompt, messages, temperature, max_tokens),
                timeout=self.settings.timeout_seconds,
            )

        content = await with_retry_and_metrics(
            _attempt,
            metrics=self.metrics,
            metric_type=LLM_CALL,
            metric_operation=operation,
        )

        if self.quota is not None and tenant_id:
            await self.quota.increment(tenant_id)
        logger.info(
            "LLM call completed: provider=%s model=%s tenant=%s chars=%d",
            self.settings.provider, self.settings.model, tenant_id, len(content),
        )
        return content

    async def _dispatch(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        if self.settings.provider == "anthropic":
            return await self._call_anthropic(system_prompt, messages, temperature, max_tokens)
        return await self._call_openai(system_prompt, messages, temperature, max_tokens)

    # ------------------------------------------------------------------
    # Provider implementations
    # ------------------------------------------------------------------

    async def _call_openai(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        if self._client is None:
            from openai import AsyncOpenAI

            if self.settings.provider == "local":
                self._client = AsyncOpenAI(
                    base_url=self.settings.base_url or DEFAULT_LOCAL_URL,
                    api_key=self.settings.api_key or "ollama",
                )
            else:
                self._client = AsyncOpenAI(
                    base_url=self.settings.base_url,
                    api_key=self.settings.api_key,
                )
        resp = await self._client.chat.completions.create(
            model=self.settings.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""

    async def _call_anthropic(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        if self._client is None:
            from anthropic import AsyncAnthropic

            self._client = AsyncAnthropic(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url,
            )
        resp = await self._client.messages.create(
            model=self.settings.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=messages,
        )
        return "\n".join(
            block.text for block in resp.content if getattr(block, "type", None) == "text"
        )
