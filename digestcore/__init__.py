"""Feed digest pipeline: enrichment, LLM summarization with fallbacks, and a serialized build queue."""

__version__ = "0.1.0"
