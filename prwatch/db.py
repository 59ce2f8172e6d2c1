"""
SQLite schema and migrations for the prwatch mirror.

Schema:
- prs: mutable PR metadata, overwritten on each sync
- entries: activity log keyed by (id, repo)
- sync_meta: incremental sync state per repository and scope

The schema version lives in PRAGMA user_version. Migrations are keyed by the
version they upgrade from and run in ascending order inside one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 5
BUSY_TIMEOUT_MS = 5000

SCHEMA_SQL = """
-- Mutable PR metadata (updated on each sync)
CREATE TABLE IF NOT EXISTS prs (
    repo TEXT NOT NULL,
    number INTEGER NOT NULL,
    node_id TEXT,
    state TEXT NOT NULL,
    is_draft INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    author TEXT,
    branch TEXT,
    labels TEXT,
    updated_at TEXT,
    frozen_at TEXT,
    PRIMARY KEY (repo, number)
);

-- Activity log; (id, repo) avoids collisions across repositories
CREATE TABLE IF NOT EXISTS entries (
    id TEXT NOT NULL,
    repo TEXT NOT NULL,
    pr INTEGER NOT NULL,
    type TEXT NOT NULL,
    subtype TEXT,
    author TEXT,
    body TEXT,
    state TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    captured_at TEXT NOT NULL,
    url TEXT,
    file TEXT,
    line INTEGER,
    thread_resolved INTEGER,
    graphite_json TEXT,
    file_activity_json TEXT,
    reactions_json TEXT,
    PRIMARY KEY (id, repo),
    FOREIGN KEY (repo, pr) REFERENCES prs(repo, number)
);

-- Sync state; the unsuffixed columns track the most recent sync of any scope
CREATE TABLE IF NOT EXISTS sync_meta (
    repo TEXT PRIMARY KEY,
    cursor TEXT,
    last_sync TEXT NOT NULL,
    pr_count INTEGER NOT NULL DEFAULT 0,
    cursor_open TEXT,
    last_sync_open TEXT,
    pr_count_open INTEGER,
    cursor_closed TEXT,
    last_sync_closed TEXT,
    pr_count_closed INTEGER
);

CREATE INDEX IF NOT EXISTS idx_entries_repo_pr ON entries(repo, pr);
CREATE INDEX IF NOT EXISTS idx_entries_type ON entries(type);
CREATE INDEX IF NOT EXISTS idx_entries_created ON entries(created_at);
CREATE INDEX IF NOT EXISTS idx_entries_author ON entries(author);
CREATE INDEX IF NOT EXISTS idx_entries_thread_resolved ON entries(thread_resolved);
CREATE INDEX IF NOT EXISTS idx_prs_state ON prs(repo, state);
CREATE INDEX IF NOT EXISTS idx_prs_author ON prs(repo, author);
"""

# from-version -> statements that bring the schema to from-version + 1
MIGRATIONS: dict[int, tuple[str, ...]] = {
    # v1 -> v2: thread resolution for orphaned comment tracking
    1: (
        "ALTER TABLE entries ADD COLUMN thread_resolved INTEGER",
        "CREATE INDEX IF NOT EXISTS idx_entries_thread_resolved ON entries(thread_resolved)",
    ),
    # v2 -> v3: comment reactions
    2: ("ALTER TABLE entries ADD COLUMN reactions_json TEXT",),
    # v3 -> v4: PR freeze
    3: ("ALTER TABLE prs ADD COLUMN frozen_at TEXT",),
    # v4 -> v5: per-scope sync state; NULL means the scope has never synced
    4: (
        "ALTER TABLE sync_meta ADD COLUMN cursor_open TEXT",
        "ALTER TABLE sync_meta ADD COLUMN last_sync_open TEXT",
        "ALTER TABLE sync_meta ADD COLUMN pr_count_open INTEGER",
        "ALTER TABLE sync_meta ADD COLUMN cursor_closed TEXT",
        "ALTER TABLE sync_meta ADD COLUMN last_sync_closed TEXT",
        "ALTER TABLE sync_meta ADD COLUMN pr_count_closed INTEGER",
    ),
}


def connect(db_path: Path | str, timeout: float = BUSY_TIMEOUT_MS / 1000) -> sqlite3.Connection:
    """
    Open a connection with the mirror's settings.

    Transactions are managed explicitly (autocommit mode), foreign keys are
    enforced and lock waits are bounded so contention surfaces as
    ``sqlite3.OperationalError: database is locked``.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    return conn


def get_schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    # PRAGMA does not accept bound parameters
    conn.execute(f"PRAGMA user_version = {int(version)}")


def init_schema(conn: sqlite3.Connection) -> int:
    """
    Create or migrate the schema and return the resulting version.

    A fresh file gets the full schema stamped at the current version. An
    older file is migrated step by step; a file at or above the current
    version is left alone.
    """
    conn.execute("PRAGMA journal_mode = WAL")

    version = get_schema_version(conn)
    if version >= CURRENT_SCHEMA_VERSION:
        return version

    conn.execute("BEGIN IMMEDIATE")
    try:
        # Re-read inside the write lock in case another process migrated first
        version = get_schema_version(conn)
        if version == 0:
            logger.debug("Creating schema v%s", CURRENT_SCHEMA_VERSION)
            for statement in _split_statements(SCHEMA_SQL):
                conn.execute(statement)
            version = CURRENT_SCHEMA_VERSION
        else:
            version = migrate(conn, version, CURRENT_SCHEMA_VERSION)
        _set_schema_version(conn, version)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    return version


def migrate(conn: sqlite3.Connection, current: int, target: int) -> int:
    """Apply migration steps from ``current`` up to ``target``; caller owns the transaction."""
    version = current
    while version < target:
        steps = MIGRATIONS.get(version)
        if steps is None:
            raise sqlite3.DatabaseError(f"No migration from schema version {version}")
        logger.debug("Migrating schema v%s -> v%s", version, version + 1)
        for statement in steps:
            conn.execute(statement)
        version += 1
    return version


def _split_statements(script: str) -> list[str]:
    # executescript() would commit the open transaction, so run statements one by one
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]
