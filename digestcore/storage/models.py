"""Row models for the storage layer."""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC string so that SQL string comparison orders correctly.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(_TS_FORMAT)


def from_db_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.strptime(str(value), _TS_FORMAT)
    except ValueError:
        from dateutil.parser import parse

        try:
            parsed = parse(str(value))
        except (ValueError, OverflowError):
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Use shared canonical URL logic with the digest dedup for consistent keys
def _canonicalize_url(url: str) -> str:
    from digestcore.digest.dedup import canonical_url
    return canonical_url(url)


@dataclass
class Source:
    """A feed configured for a channel."""

    id: str
    channel_id: str
    name: str
    url: str
    enabled: bool = True
    last_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def make_id(channel_id: str, url: str) -> str:
        raw = f"{channel_id}:{url}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]

    @classmethod
    def create(cls, channel_id: str, name: str, url: str) -> Source:
        return cls(
            id=cls.make_id(channel_id, url),
            channel_id=channel_id,
            name=name,
            url=url,
            created_at=utcnow(),
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.channel_id,
            self.name,
            self.url,
            int(self.enabled),
            to_db_timestamp(self.last_fetched_at) if self.last_fetched_at else None,
            to_db_timestamp(self.created_at or utcnow()),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Source:
        return cls(
            id=row["id"],
            channel_id=row["channel_id"],
            name=row["name"],
            url=row["url"],
            enabled=bool(row.get("enabled", 1)),
            last_fetched_at=from_db_timestamp(row.get("last_fetched_at")),
            created_at=from_db_timestamp(row.get("created_at")),
        )


@dataclass
class Item:
    """A stored feed entry. ``url`` is already canonical."""

    id: str
    source_id: str
    title: str
    url: str
    content_hash: str
    created_at: datetime
    published_at: Optional[datetime] = None
    content_snippet: Optional[str] = None

    @staticmethod
    def canonicalize_url(url: str) -> str:
        return _canonicalize_url(url)

    @staticmethod
    def make_content_hash(canonical_url: str, title: str, published_at: Optional[datetime]) -> str:
        base = "|".join([canonical_url, title.strip(), published_at.isoformat() if published_at else ""])
        return hashlib.sha256(base.encode("utf-8")).hexdigest()

    @classmethod
    def create(
        cls,
        source_id: str,
        url: str,
        title: str,
        published_at: Optional[datetime] = None,
        content_snippet: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Item:
        canonical = cls.canonicalize_url(url)
        return cls(
            id=uuid.uuid4().hex,
            source_id=source_id,
            title=title,
            url=canonical,
            content_hash=cls.make_content_hash(canonical, title, published_at),
            created_at=created_at or utcnow(),
            published_at=published_at,
            content_snippet=content_snippet,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.source_id,
            self.title,
            self.url,
            to_db_timestamp(self.published_at) if self.published_at else None,
            self.content_snippet,
            self.content_hash,
            to_db_timestamp(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Item:
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            url=row["url"],
            content_hash=row["content_hash"],
            created_at=from_db_timestamp(row["created_at"]) or utcnow(),
            published_at=from_db_timestamp(row.get("published_at")),
            content_snippet=row.get("content_snippet"),
        )


@dataclass
class DigestRecord:
    """A persisted digest: the window it covers and its rendered overview."""

    id: Optional[int]
    channel_id: str
    range_start: datetime
    range_end: datetime
    content: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> DigestRecord:
        return cls(
            id=row.get("id"),
            channel_id=row["channel_id"],
            range_start=from_db_timestamp(row["range_start"]),
            range_end=from_db_timestamp(row["range_end"]),
            content=row["content"],
            created_at=from_db_timestamp(row.get("created_at")),
        )


@dataclass
class Metric:
    """One observability event (llm_call, rss_fetch, digest_run, ...)."""

    type: str
    operation: str
    status: str  # "success" | "failure" | "degraded"
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_row(self) -> tuple:
        return (
            self.type,
            self.operation,
            self.status,
            json.dumps(self.metadata, default=str) if self.metadata else None,
            to_db_timestamp(self.created_at or utcnow()),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Metric:
        return cls(
            id=row.get("id"),
            type=row["type"],
            operation=row["operation"],
            status=row["status"],
            metadata=_parse_json(row.get("metadata")),
            created_at=from_db_timestamp(row.get("created_at")),
        )


@dataclass
class Tenant:
    """Soft LLM budget for one tenant."""

    id: str
    llm_daily_quota: int
    llm_used_today: int
    quota_reset_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Tenant:
        return cls(
            id=row["id"],
            llm_daily_quota=row["llm_daily_quota"],
            llm_used_today=row["llm_used_today"],
            quota_reset_at=from_db_timestamp(row["quota_reset_at"]) or utcnow(),
        )

    @property
    def remaining(self) -> int:
        return max(0, self.llm_daily_quota - self.llm_used_today)


def _parse_json(val: Any) -> Optional[Dict[str, Any]]:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if isinstance(val, dict):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None


@dataclass
class IngestResult:
    """Result of ingesting one source."""

    source_id: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_message is None


@dataclass
class IngestSummary:
    """Aggregate result from a full ingest run."""

    results: List[IngestResult] = field(default_factory=list)
    total_fetched: int = 0
    total_inserted: int = 0
    total_duplicates: int = 0
    total_errors: int = 0
    duration_seconds: float = 0.0

    def add(self, result: IngestResult) -> None:
        self.results.append(result)
        self.total_fetched += result.fetched
        self.total_inserted += result.inserted
        self.total_duplicates += result.duplicates
        self.total_errors += result.errors
