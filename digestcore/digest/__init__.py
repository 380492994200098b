"""Digest generation: enrichment, summarization, dedup and the build queue."""

from digestcore.digest.generator import DigestGenerator
from digestcore.digest.models import DigestItem, DigestResult, FallbackReason, SummaryMeta
from digestcore.digest.queue import BuildJob, DigestQueue
from digestcore.digest.summarizer import DigestSummarizer

__all__ = [
    "BuildJob",
    "DigestGenerator",
    "DigestItem",
    "DigestQueue",
    "DigestResult",
    "DigestSummarizer",
    "FallbackReason",
    "SummaryMeta",
]
