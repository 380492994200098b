"""Configuration loading: config.yaml with ${ENV_VAR} substitution, plus typed views."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/digest.db"

DEFAULT_MISSING_CONTENT_NOTICE = "(No summary available: full text fetch failed.)"
DEFAULT_SKIP_HOSTS = ("x.com", "www.x.com", "twitter.com", "www.twitter.com")

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _resolve_env(value: Any) -> Any:
    """Replace ${VAR} with the environment value (empty string when unset)."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load YAML config. A missing file yields an empty config (all defaults)."""
    load_dotenv()
    config_path = Path(path)
    if not config_path.exists():
        logger.info("Config %s not found; using defaults", path)
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return _resolve_env(data)


def _positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _positive_float(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


@dataclass(frozen=True)
class DigestSettings:
    """Knobs for enrichment, summarization and assembly (``digest:`` section)."""

    digest_max_items: int = 30
    max_items_per_source: int = 10
    item_summary_max_chars: int = 320
    fulltext_max_chars: int = 2000
    min_content_chars_for_llm: int = 120
    fulltext_timeout_seconds: float = 8.0
    fulltext_concurrency: int = 3
    fulltext_cache_ttl_seconds: float = 6 * 60 * 60
    llm_batch_size: int = 1
    timezone: Optional[str] = None
    missing_content_notice: str = DEFAULT_MISSING_CONTENT_NOTICE
    skip_hosts: Tuple[str, ...] = DEFAULT_SKIP_HOSTS

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> DigestSettings:
        d = config.get("digest", {}) or {}
        defaults = cls()
        skip_hosts = d.get("skip_hosts")
        return cls(
            digest_max_items=_positive_int(d.get("max_items"), defaults.digest_max_items),
            max_items_per_source=_positive_int(
                d.get("max_items_per_source"), defaults.max_items_per_source
            ),
            item_summary_max_chars=_positive_int(
                d.get("item_summary_max_chars"), defaults.item_summary_max_chars
            ),
            fulltext_max_chars=_positive_int(d.get("fulltext_max_chars"), defaults.fulltext_max_chars),
            min_content_chars_for_llm=_positive_int(
                d.get("min_content_chars_for_llm"), defaults.min_content_chars_for_llm
            ),
            fulltext_timeout_seconds=_positive_float(
                d.get("fulltext_timeout_seconds"), defaults.fulltext_timeout_seconds
            ),
            fulltext_concurrency=_positive_int(
                d.get("fulltext_concurrency"), defaults.fulltext_concurrency
            ),
            fulltext_cache_ttl_seconds=_positive_float(
                d.get("fulltext_cache_ttl_seconds"), defaults.fulltext_cache_ttl_seconds
            ),
            llm_batch_size=_positive_int(d.get("llm_batch_size"), defaults.llm_batch_size),
            timezone=d.get("timezone") or None,
            missing_content_notice=d.get("missing_content_notice") or defaults.missing_content_notice,
            skip_hosts=tuple(h.lower() for h in skip_hosts) if skip_hosts else defaults.skip_hosts,
        )


@dataclass(frozen=True)
class LLMSettings:
    """LLM provider settings (``llm:`` section).

    ``enabled`` is the feature switch (provider other than ``none``);
    ``configured`` says whether the provider has what it needs to be called.
    """

    provider: str = "none"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = 4000
    temperature: float = 0.3
    timeout_seconds: float = 120.0
    default_daily_quota: int = 100

    @property
    def enabled(self) -> bool:
        return self.provider != "none"

    @property
    def configured(self) -> bool:
        if not self.enabled or not self.model:
            return False
        if self.provider == "local":
            return True
        return bool(self.api_key)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> LLMSettings:
        llm = config.get("llm", {}) or {}
        defaults = cls()
        provider = str(llm.get("provider") or "none").lower().strip()
        if provider not in ("none", "openai_compat", "anthropic", "local"):
            logger.warning("Unknown llm.provider %r; LLM disabled", provider)
            provider = "none"
        temperature = llm.get("temperature", defaults.temperature)
        return cls(
            provider=provider,
            api_key=llm.get("api_key") or None,
            base_url=llm.get("base_url") or None,
            model=llm.get("model") or None,
            max_tokens=_positive_int(llm.get("max_tokens"), defaults.max_tokens),
            temperature=float(temperature) if temperature is not None else defaults.temperature,
            timeout_seconds=_positive_float(llm.get("timeout_seconds"), defaults.timeout_seconds),
            default_daily_quota=_positive_int(
                llm.get("default_daily_quota"), defaults.default_daily_quota
            ),
        )
