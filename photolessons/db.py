"""SQLite database helpers and schema initialization.

The queue database is the only source of truth for pipeline state. Each
connection runs in autocommit mode; writers open explicit IMMEDIATE
transactions so a claim is a single atomic step.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    category TEXT NOT NULL,
    filename TEXT NOT NULL,
    name_no_ext TEXT NOT NULL DEFAULT '',
    asset_id INTEGER NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    reprocess INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT DEFAULT NULL,
    completed_at TEXT DEFAULT NULL,
    last_error TEXT DEFAULT '',
    result_json TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at, id);

-- At most one job may be processing at any instant.
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_single_processing
    ON jobs(status) WHERE status = 'processing';
"""

_MAX_LOCK_RETRIES = 50


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Apply WAL + timeout settings to reduce lock contention."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create an autocommit SQLite connection for the queue database."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    _configure_connection(conn)
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the queue schema if it doesn't exist."""

    conn = get_connection(db_path)
    try:
        conn.executescript(QUEUE_SCHEMA)
        ensure_schema(conn)
    finally:
        conn.close()


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Add columns introduced after the first queue schema."""

    columns = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)")}
    applied_migrations: list[str] = []

    if "name_no_ext" not in columns:
        conn.execute("ALTER TABLE jobs ADD COLUMN name_no_ext TEXT NOT NULL DEFAULT ''")
        applied_migrations.append("name_no_ext")
    if "asset_id" not in columns:
        conn.execute("ALTER TABLE jobs ADD COLUMN asset_id INTEGER NULL")
        applied_migrations.append("asset_id")
    if "result_json" not in columns:
        conn.execute("ALTER TABLE jobs ADD COLUMN result_json TEXT DEFAULT ''")
        applied_migrations.append("result_json")

    for migration in applied_migrations:
        logger.info(
            "Applied queue schema migration",
            extra={"event": "queue_schema_migrated", "context": {"migration": migration}},
        )


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE, rolling back on error."""

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def retry_when_locked(operation: Callable[[], T]) -> T:
    """Retry an operation while SQLite reports the database is locked."""

    for attempt in range(_MAX_LOCK_RETRIES):
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            if "database is locked" not in str(exc).lower():
                raise
            if attempt == _MAX_LOCK_RETRIES - 1:
                raise RuntimeError(
                    "Queue database is still locked after retries."
                ) from exc
            time.sleep(0.1)
    raise RuntimeError("unreachable")
