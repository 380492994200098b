"""Async SQLite manager (WAL mode): item store, digest store, metric rows and tenants."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from digestcore.storage.migrations import apply_migrations
from digestcore.storage.models import (
    DigestRecord,
    Item,
    Metric,
    Source,
    Tenant,
    to_db_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class DatabaseManager:
    """Shared aiosqlite connection for the digest pipeline.

    Reads go straight to the connection; writes funnel through one lock so the
    ingest loop, the build queue and the quota store never interleave transactions.

    Usage:
        db = DatabaseManager("data/digest.db")
        await db.initialize()
        sources = await db.list_enabled_sources("general")
        await db.close()
    """

    # Applied on every connection; journal_mode is persisted by the migration step.
    CONNECTION_PRAGMAS = (
        "PRAGMA synchronous=NORMAL",
        "PRAGMA foreign_keys=ON",
        "PRAGMA busy_timeout=5000",
    )

    def __init__(self, db_path: str, batch_size: int = DEFAULT_BATCH_SIZE, cache_size_mb: int = 64):
        self.db_path = db_path
        self.batch_size = batch_size
        self.cache_size_mb = cache_size_mb
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Migrate the schema, then open the shared connection."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        version = apply_migrations(self.db_path)

        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        for pragma in self.CONNECTION_PRAGMAS + (f"PRAGMA cache_size=-{self.cache_size_mb * 1024}",):
            await conn.execute(pragma)
        self._conn = conn
        logger.info("Opened %s (schema v%d)", self.db_path, version)

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers and run the block in one IMMEDIATE transaction."""
        if self._conn is None:
            raise RuntimeError(f"DatabaseManager({self.db_path!r}) used before initialize()")
        async with self._write_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                await self._conn.rollback()
                raise
            await self._conn.commit()

    # --- Sources ---

    async def upsert_source(self, source: Source) -> None:
        """Insert or update a source (keyed by id)."""
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO sources (id, channel_id, name, url, enabled, last_fetched_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name=excluded.name,
                       enabled=excluded.enabled""",
                source.to_row(),
            )

    async def get_source(self, source_id: str) -> Optional[Source]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
        row = await cursor.fetchone()
        return Source.from_row(dict(row)) if row else None

    async def list_enabled_sources(self, channel_id: str) -> List[Source]:
        """Enabled sources of a channel, oldest first."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM sources WHERE channel_id = ? AND enabled = 1
               ORDER BY created_at ASC, id ASC""",
            (channel_id,),
        )
        rows = await cursor.fetchall()
        return [Source.from_row(dict(r)) for r in rows]

    async def list_channels(self) -> List[str]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT DISTINCT channel_id FROM sources ORDER BY channel_id")
        return [r[0] for r in await cursor.fetchall()]

    async def mark_source_fetched(self, source_id: str, fetched_at: Optional[datetime] = None) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE sources SET last_fetched_at = ? WHERE id = ?",
                (to_db_timestamp(fetched_at or utcnow()), source_id),
            )

    # --- Items ---

    async def batch_insert_items(self, items: List[Item]) -> int:
        """Insert items in batches, skipping (source, content hash) duplicates. Returns count inserted."""
        if not items:
            return 0

        inserted = 0
        async with self._transaction() as conn:
            for i in range(0, len(items), self.batch_size):
                batch = items[i : i + self.batch_size]
                rows = [item.to_row() for item in batch]
                cursor = await conn.executemany(
                    """INSERT OR IGNORE INTO items
                       (id, source_id, title, url, published_at, content_snippet,
                        content_hash, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    rows,
                )
                inserted += cursor.rowcount

        logger.info("Batch insert: %d/%d items inserted", inserted, len(items))
        return inserted

    async def list_items_in_window(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        max_count: int,
    ) -> List[Item]:
        """Items ingested in ``[start, end)``, most recent first."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM items
               WHERE source_id = ? AND created_at >= ? AND created_at < ?
               ORDER BY created_at DESC LIMIT ?""",
            (source_id, to_db_timestamp(start), to_db_timestamp(end), max_count),
        )
        rows = await cursor.fetchall()
        return [Item.from_row(dict(r)) for r in rows]

    async def count_items(self, source_id: Optional[str] = None) -> int:
        assert self._conn is not None
        if source_id:
            cursor = await self._conn.execute(
                "SELECT COUNT(*) FROM items WHERE source_id = ?", (source_id,)
            )
        else:
            cursor = await self._conn.execute("SELECT COUNT(*) FROM items")
        row = await cursor.fetchone()
        return row[0] if row else 0

    # --- Digests ---

    async def create_digest_record(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
        content: str,
    ) -> DigestRecord:
        created_at = utcnow()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO digests (channel_id, range_start, range_end, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    channel_id,
                    to_db_timestamp(start),
                    to_db_timestamp(end),
                    content,
                    to_db_timestamp(created_at),
                ),
            )
            digest_id = cursor.lastrowid
        return DigestRecord(
            id=digest_id,
            channel_id=channel_id,
            range_start=start,
            range_end=end,
            content=content,
            created_at=created_at,
        )

    async def get_last_digest(self, channel_id: str) -> Optional[DigestRecord]:
        """Most recent digest of a channel by window end."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            """SELECT * FROM digests WHERE channel_id = ?
               ORDER BY range_end DESC, id DESC LIMIT 1""",
            (channel_id,),
        )
        row = await cursor.fetchone()
        return DigestRecord.from_row(dict(row)) if row else None

    # --- Metrics ---

    async def insert_metric(self, metric: Metric) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO metrics (type, operation, status, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                metric.to_row(),
            )

    async def list_metrics(
        self,
        metric_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Metric]:
        """Most recent metrics first, optionally filtered by type."""
        assert self._conn is not None
        if metric_type:
            cursor = await self._conn.execute(
                "SELECT * FROM metrics WHERE type = ? ORDER BY id DESC LIMIT ?",
                (metric_type, limit),
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM metrics ORDER BY id DESC LIMIT ?", (limit,)
            )
        rows = await cursor.fetchall()
        return [Metric.from_row(dict(r)) for r in rows]

    # --- Tenants (soft LLM quota) ---

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,))
        row = await cursor.fetchone()
        return Tenant.from_row(dict(row)) if row else None

    async def upsert_tenant(self, tenant: Tenant) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO tenants (id, llm_daily_quota, llm_used_today, quota_reset_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       llm_daily_quota=excluded.llm_daily_quota,
                       llm_used_today=excluded.llm_used_today,
                       quota_reset_at=excluded.quota_reset_at""",
                (
                    tenant.id,
                    tenant.llm_daily_quota,
                    tenant.llm_used_today,
                    to_db_timestamp(tenant.quota_reset_at),
                ),
            )

    async def increment_llm_usage(self, tenant_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE tenants SET llm_used_today = llm_used_today + 1 WHERE id = ?",
                (tenant_id,),
            )

    # --- Maintenance ---

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts per table plus items per source."""
        assert self._conn is not None
        stats: Dict[str, Any] = {}
        for table in ("sources", "items", "digests", "metrics", "tenants"):
            cursor = await self._conn.execute(f"SELECT COUNT(*) FROM {table}")
            row = await cursor.fetchone()
            stats[f"total_{table}"] = row[0] if row else 0

        cursor = await self._conn.execute(
            """SELECT s.name AS name, COUNT(i.id) AS cnt FROM sources s
               LEFT JOIN items i ON i.source_id = s.id
               GROUP BY s.id ORDER BY cnt DESC"""
        )
        stats["items_by_source"] = {r["name"]: r["cnt"] for r in await cursor.fetchall()}
        return stats
