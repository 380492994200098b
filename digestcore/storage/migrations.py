"""Numbered schema migrations, applied with the blocking sqlite3 driver before the pool opens."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, NamedTuple, Tuple

logger = logging.getLogger(__name__)

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"


class Migration(NamedTuple):
    version: int
    description: str
    scripts: Tuple[str, ...]


def _schema_script() -> str:
    return SCHEMA_SQL_PATH.read_text(encoding="utf-8")


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(1, "Channel sources, window items, digest log, metrics, tenant quotas", (_schema_script(),)),
)


def get_current_version(conn: sqlite3.Connection) -> int:
    """Highest recorded schema version; 0 for a fresh database."""
    try:
        (version,) = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return version


def pending_migrations(conn: sqlite3.Connection) -> List[Migration]:
    current = get_current_version(conn)
    return [m for m in MIGRATIONS if m.version > current]


def apply_migrations(db_path: str) -> int:
    """Bring ``db_path`` up to the latest schema and return the resulting version.

    The database is switched to WAL first so the aiosqlite connection and the
    CLI's ad-hoc readers never block each other.
    """
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

        todo = pending_migrations(conn)
        for migration in todo:
            logger.info("Migrating schema to v%d (%s)", migration.version, migration.description)
            try:
                for script in migration.scripts:
                    conn.executescript(script)
                with conn:
                    conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (migration.version, migration.description),
                    )
            except sqlite3.Error:
                logger.exception("Schema migration v%d failed", migration.version)
                raise

        version = get_current_version(conn)

    if todo:
        logger.info("Schema now at v%d after %d migration(s)", version, len(todo))
    return version
