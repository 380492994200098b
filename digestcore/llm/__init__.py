"""LLM access with a soft per-tenant daily quota."""

from digestcore.llm.client import LLMClient
from digestcore.llm.quota import QuotaStore

__all__ = ["LLMClient", "QuotaStore"]
