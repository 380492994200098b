"""Exception taxonomy for the digest pipeline.

Only ``QueueMisconfiguredError`` and ``PersistenceError`` are fatal to a build;
the rest are caught at the item or batch level and degrade the output.
"""

from __future__ import annotations


class DigestError(Exception):
    """Base class for all digest pipeline errors."""


class QuotaExceededError(DigestError):
    """The tenant's daily LLM budget is used up."""

    def __init__(self, tenant_id: str, used: int, quota: int) -> None:
        super().__init__(f"Daily LLM quota exceeded for {tenant_id} ({used}/{quota})")
        self.tenant_id = tenant_id
        self.used = used
        self.quota = quota


class LLMNotConfiguredError(DigestError):
    """LLM provider, model or API key is missing."""


class FetchError(DigestError):
    """Article text could not be fetched (HTTP or network failure)."""


class FetchTimeoutError(FetchError):
    """Article fetch exceeded its per-call timeout."""


class ProviderErrorPage(FetchError):
    """Fetched page is a provider error / JS wall rather than an article."""


class ParseFailure(DigestError):
    """No summaries could be recovered from an LLM response."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceError(DigestError):
    """The digest record could not be written."""


class QueueMisconfiguredError(DigestError):
    """A digest job was queued but no processor is registered."""
