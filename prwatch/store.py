"""
SQLite storage for the prwatch mirror.

Every public method is one unit of work: a fresh connection, a single
transaction, committed on success and rolled back on error. PR state shown on
entries is always read from the prs table at query time, never from the
entry row.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from . import db
from .config import DB_FILENAME, get_prwatch_dir
from .errors import NotFoundError, ValidationError
from .models import (
    CommentReactions,
    Entry,
    FileActivityAfter,
    PRMetadata,
    StackMetadata,
    SyncMetadata,
    derive_pr_state,
    dump_json,
    load_json,
    load_labels,
)
from .query import (
    QueryFilters,
    QueryPlugin,
    WhereBuilder,
    build_where,
    matches_memory_filters,
    state_condition,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()

ENTRY_SELECT = """
    SELECT
        e.id, e.repo, e.pr, e.type, e.subtype, e.author, e.body, e.state,
        e.created_at, e.updated_at, e.captured_at, e.url, e.file, e.line,
        e.thread_resolved, e.graphite_json, e.file_activity_json, e.reactions_json,
        p.state AS pr_state, p.is_draft AS pr_is_draft,
        p.title AS pr_title, p.author AS pr_author,
        p.branch AS pr_branch, p.labels AS pr_labels
    FROM entries e
    JOIN prs p ON e.repo = p.repo AND e.pr = p.number
"""

UPSERT_PR_SQL = """
    INSERT INTO prs (repo, number, node_id, state, is_draft, title, author, branch, labels, updated_at)
    VALUES (:repo, :number, :node_id, :state, :is_draft, :title, :author, :branch, :labels, :updated_at)
    ON CONFLICT(repo, number) DO UPDATE SET
        node_id = excluded.node_id,
        state = excluded.state,
        is_draft = excluded.is_draft,
        title = excluded.title,
        author = excluded.author,
        branch = excluded.branch,
        labels = excluded.labels,
        updated_at = excluded.updated_at
"""

INSERT_ENTRY_SQL = """
    INSERT INTO entries
        (id, repo, pr, type, subtype, author, body, state, created_at, updated_at,
         captured_at, url, file, line, thread_resolved, graphite_json,
         file_activity_json, reactions_json)
    VALUES
        (:id, :repo, :pr, :type, :subtype, :author, :body, :state, :created_at, :updated_at,
         :captured_at, :url, :file, :line, :thread_resolved, :graphite_json,
         :file_activity_json, :reactions_json)
    ON CONFLICT(id, repo) DO UPDATE SET
        pr = excluded.pr,
        type = excluded.type,
        subtype = excluded.subtype,
        author = excluded.author,
        body = excluded.body,
        state = excluded.state,
        created_at = excluded.created_at,
        updated_at = excluded.updated_at,
        captured_at = excluded.captured_at,
        url = excluded.url,
        file = excluded.file,
        line = excluded.line,
        thread_resolved = excluded.thread_resolved,
        graphite_json = excluded.graphite_json,
        file_activity_json = COALESCE(excluded.file_activity_json, entries.file_activity_json),
        reactions_json = COALESCE(excluded.reactions_json, entries.reactions_json)
"""

SCOPE_COLUMNS = {
    "open": ("cursor_open", "last_sync_open", "pr_count_open"),
    "closed": ("cursor_closed", "last_sync_closed", "pr_count_closed"),
}


def _bool_to_int(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _pr_params(pr: PRMetadata) -> dict[str, Any]:
    return {
        "repo": pr.repo,
        "number": pr.number,
        "node_id": pr.node_id,
        "state": pr.state,
        "is_draft": 1 if pr.is_draft else 0,
        "title": pr.title,
        "author": pr.author,
        "branch": pr.branch,
        "labels": dump_json(pr.labels) if pr.labels else None,
        "updated_at": pr.updated_at,
    }


def _entry_params(entry: Entry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "repo": entry.repo,
        "pr": entry.pr,
        "type": entry.type,
        "subtype": entry.subtype,
        "author": entry.author,
        "body": entry.body,
        "state": entry.state,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "captured_at": entry.captured_at,
        "url": entry.url,
        "file": entry.file,
        "line": entry.line,
        "thread_resolved": _bool_to_int(entry.thread_resolved),
        "graphite_json": dump_json(entry.graphite),
        "file_activity_json": dump_json(entry.file_activity_after),
        "reactions_json": dump_json(entry.reactions),
    }


def _row_to_entry(row: sqlite3.Row) -> Entry:
    labels = load_labels(row["pr_labels"])
    thread_resolved = row["thread_resolved"]
    return Entry(
        id=row["id"],
        repo=row["repo"],
        pr=row["pr"],
        type=row["type"],
        author=row["author"] or "",
        created_at=row["created_at"],
        captured_at=row["captured_at"],
        pr_title=row["pr_title"] or "",
        pr_state=derive_pr_state(row["pr_state"], row["pr_is_draft"] == 1),
        pr_author=row["pr_author"] or "unknown",
        pr_branch=row["pr_branch"] or "",
        pr_labels=labels or None,
        subtype=row["subtype"],
        body=row["body"],
        state=row["state"],
        updated_at=row["updated_at"],
        url=row["url"],
        file=row["file"],
        line=row["line"],
        thread_resolved=None if thread_resolved is None else thread_resolved == 1,
        reactions=CommentReactions.from_dict(load_json(row["reactions_json"])),
        file_activity_after=FileActivityAfter.from_dict(load_json(row["file_activity_json"])),
        graphite=StackMetadata.from_dict(load_json(row["graphite_json"])),
    )


def _row_to_pr(row: sqlite3.Row) -> PRMetadata:
    return PRMetadata(
        repo=row["repo"],
        number=row["number"],
        node_id=row["node_id"],
        state=row["state"],
        is_draft=row["is_draft"] == 1,
        title=row["title"],
        author=row["author"],
        branch=row["branch"],
        labels=load_labels(row["labels"]),
        updated_at=row["updated_at"],
        frozen_at=row["frozen_at"],
    )


def _scope_meta(row: sqlite3.Row, scope: str) -> SyncMetadata | None:
    cursor_col, last_sync_col, count_col = SCOPE_COLUMNS[scope]
    last_sync = row[last_sync_col]
    if not last_sync:
        return None
    return SyncMetadata(
        repo=row["repo"],
        scope=scope,
        last_sync=last_sync,
        cursor=row[cursor_col],
        pr_count=row[count_col] or 0,
    )


class Store:
    """SQLite storage manager for Prwatch."""

    def __init__(self, db_path: Path | None = None, timeout: float = db.BUSY_TIMEOUT_MS / 1000):
        if db_path is None:
            db_path = get_prwatch_dir() / DB_FILENAME
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create or migrate the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = db.connect(self.db_path, timeout=self.timeout)
        try:
            self.schema_version = db.init_schema(conn)
        finally:
            conn.close()

    @contextmanager
    def transaction(self, write: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """
        One connection, one transaction; rolled back if the block raises.

        Write transactions take the write lock up front (BEGIN IMMEDIATE), so a
        competing writer is waited on for the busy timeout instead of failing
        when a read inside the transaction is upgraded to a write.
        """
        conn = db.connect(self.db_path, timeout=self.timeout)
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            if conn.in_transaction:
                conn.execute("COMMIT")
        finally:
            conn.close()

    # =========================================================================
    # Pull Requests
    # =========================================================================

    def upsert_pr(self, pr: PRMetadata) -> None:
        """Insert or update PR metadata. The freeze cutoff is left untouched."""
        with self.transaction(write=True) as conn:
            conn.execute(UPSERT_PR_SQL, _pr_params(pr))

    def upsert_prs(self, prs: Iterable[PRMetadata]) -> int:
        count = 0
        with self.transaction(write=True) as conn:
            for pr in prs:
                conn.execute(UPSERT_PR_SQL, _pr_params(pr))
                count += 1
        return count

    def get_pr(self, repo: str, number: int) -> PRMetadata | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM prs WHERE repo = ? AND number = ?", (repo, number)
            ).fetchone()
            return _row_to_pr(row) if row else None

    def get_prs_by_state(self, repo: str, states: Sequence[str]) -> list[PRMetadata]:
        """PRs of a repository whose display state is one of ``states``."""
        if not states:
            return []
        builder = WhereBuilder()
        builder.add("repo = :repo", repo=repo)
        condition = state_condition(states, builder, alias="prs")
        if condition:
            builder.add(condition)
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM prs {builder.sql} ORDER BY number", builder.params
            ).fetchall()
            return [_row_to_pr(row) for row in rows]

    def set_frozen_at(self, repo: str, number: int, frozen_at: str | None) -> None:
        """Set or clear a PR's freeze cutoff; raises NotFoundError for unknown PRs."""
        with self.transaction(write=True) as conn:
            cursor = conn.execute(
                "UPDATE prs SET frozen_at = ? WHERE repo = ? AND number = ?",
                (frozen_at, repo, number),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"PR {repo}#{number} not found")

    def get_frozen_prs(self, repo: str | None = None) -> list[PRMetadata]:
        query = "SELECT * FROM prs WHERE frozen_at IS NOT NULL"
        params: list[Any] = []
        if repo:
            query += " AND repo = ?"
            params.append(repo)
        query += " ORDER BY frozen_at DESC"
        with self.transaction() as conn:
            return [_row_to_pr(row) for row in conn.execute(query, params).fetchall()]

    # =========================================================================
    # Entries
    # =========================================================================

    def _insert_entries(self, conn: sqlite3.Connection, entries: Iterable[Entry]) -> int:
        added = 0
        for entry in entries:
            exists = conn.execute(
                "SELECT 1 FROM entries WHERE id = ? AND repo = ?", (entry.id, entry.repo)
            ).fetchone()
            conn.execute(INSERT_ENTRY_SQL, _entry_params(entry))
            if exists is None:
                added += 1
        return added

    def insert_entries(self, entries: Iterable[Entry]) -> int:
        """Insert or overwrite entries keyed by (id, repo); returns how many were new."""
        with self.transaction(write=True) as conn:
            return self._insert_entries(conn, entries)

    def write_page(self, prs: Iterable[PRMetadata], entries: Iterable[Entry]) -> int:
        """Upsert a page of PRs and their entries atomically; returns new entry count."""
        with self.transaction(write=True) as conn:
            for pr in prs:
                conn.execute(UPSERT_PR_SQL, _pr_params(pr))
            return self._insert_entries(conn, entries)

    def get_entry(self, entry_id: str, repo: str) -> Entry | None:
        with self.transaction() as conn:
            row = conn.execute(
                ENTRY_SELECT + " WHERE e.id = :id AND e.repo = :repo",
                {"id": entry_id, "repo": repo},
            ).fetchone()
            return _row_to_entry(row) if row else None

    def require_entry(self, entry_id: str, repo: str) -> Entry:
        entry = self.get_entry(entry_id, repo)
        if entry is None:
            raise NotFoundError(f"Entry {entry_id} not found in {repo}")
        return entry

    def update_entry(
        self,
        entry_id: str,
        repo: str,
        *,
        body: str | None = _UNSET,
        state: str | None = _UNSET,
        updated_at: str | None = _UNSET,
        file_activity_after: FileActivityAfter | None = _UNSET,
    ) -> None:
        """Update selected fields of a stored entry in place."""
        updates: dict[str, Any] = {}
        if body is not _UNSET:
            updates["body"] = body
        if state is not _UNSET:
            updates["state"] = state
        if updated_at is not _UNSET:
            updates["updated_at"] = updated_at
        if file_activity_after is not _UNSET:
            updates["file_activity_json"] = dump_json(file_activity_after)
        if not updates:
            return

        # Column names come from the fixed keys above
        assignments = ", ".join(f"{column} = :{column}" for column in updates)
        with self.transaction(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE entries SET {assignments} WHERE id = :entry_id AND repo = :entry_repo",
                {**updates, "entry_id": entry_id, "entry_repo": repo},
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Entry {entry_id} not found in {repo}")

    def update_file_activity(
        self, updates: Sequence[tuple[str, str, FileActivityAfter]]
    ) -> int:
        """Write a batch of (id, repo, annotation) in one transaction."""
        if not updates:
            return 0
        with self.transaction(write=True) as conn:
            conn.executemany(
                "UPDATE entries SET file_activity_json = ? WHERE id = ? AND repo = ?",
                [(dump_json(activity), entry_id, repo) for entry_id, repo, activity in updates],
            )
        return len(updates)

    def query_entries(
        self,
        filters: QueryFilters | None = None,
        limit: int | None = None,
        offset: int = 0,
        plugins: Sequence[QueryPlugin] = (),
    ) -> list[Entry]:
        """
        Query entries, newest first, with PR state read from the prs table.

        Author/bot exclusion and plugin filters run after the SQL query, so
        pagination is applied in SQL only when no such filter is present.
        """
        if filters is None:
            filters = QueryFilters()
        filters.validate()
        if limit is not None and limit < 0:
            raise ValidationError("limit must be non-negative")
        if offset < 0:
            raise ValidationError("offset must be non-negative")

        builder = build_where(filters)
        query = f"{ENTRY_SELECT} {builder.sql} ORDER BY e.created_at DESC, e.id"
        params = dict(builder.params)

        push_down = not filters.has_memory_filters
        if push_down and (limit is not None or offset):
            query += " LIMIT :limit OFFSET :offset"
            params["limit"] = -1 if limit is None else limit
            params["offset"] = offset

        with self.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        entries = [_row_to_entry(row) for row in rows]

        if push_down:
            return entries

        entries = [e for e in entries if matches_memory_filters(e, filters, plugins)]
        end = None if limit is None else offset + limit
        return entries[offset:end]

    def count_entries(
        self,
        filters: QueryFilters | None = None,
        plugins: Sequence[QueryPlugin] = (),
    ) -> int:
        """Number of entries the unpaginated query would return."""
        if filters is None:
            filters = QueryFilters()
        if filters.has_memory_filters:
            return len(self.query_entries(filters, plugins=plugins))

        filters.validate()
        builder = build_where(filters)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM entries e JOIN prs p ON e.repo = p.repo AND e.pr = p.number "
                + builder.sql,
                builder.params,
            ).fetchone()
            return int(row[0]) if row else 0

    def count_entries_after(self, repo: str, number: int, cutoff: str) -> int:
        """Entries of one PR created strictly after ``cutoff``."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM entries WHERE repo = ? AND pr = ? AND created_at > ?",
                (repo, number, cutoff),
            ).fetchone()
            return int(row[0]) if row else 0

    def get_repos(self) -> list[str]:
        """Repositories that have stored entries."""
        with self.transaction() as conn:
            rows = conn.execute("SELECT DISTINCT repo FROM entries ORDER BY repo").fetchall()
            return [row["repo"] for row in rows]

    def clear_repo(self, repo: str) -> None:
        """Delete all entries, PRs and sync state for a repository."""
        with self.transaction(write=True) as conn:
            conn.execute("DELETE FROM entries WHERE repo = ?", (repo,))
            conn.execute("DELETE FROM prs WHERE repo = ?", (repo,))
            conn.execute("DELETE FROM sync_meta WHERE repo = ?", (repo,))
        logger.debug("Cleared mirror data for %s", repo)

    # =========================================================================
    # Sync Metadata
    # =========================================================================

    def get_sync_meta(self, repo: str, scope: str) -> SyncMetadata | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_meta WHERE repo = ?", (repo,)).fetchone()
            return _scope_meta(row, scope) if row else None

    def set_sync_meta(self, meta: SyncMetadata) -> None:
        """
        Record sync state for one scope.

        The unsuffixed columns follow whichever scope synced most recently.
        """
        cursor_col, last_sync_col, count_col = SCOPE_COLUMNS[meta.scope]
        with self.transaction(write=True) as conn:
            conn.execute(
                f"""
                INSERT INTO sync_meta (repo, cursor, last_sync, pr_count,
                                       {cursor_col}, {last_sync_col}, {count_col})
                VALUES (:repo, :cursor, :last_sync, :pr_count, :cursor, :last_sync, :pr_count)
                ON CONFLICT(repo) DO UPDATE SET
                    cursor = CASE WHEN excluded.last_sync >= sync_meta.last_sync
                                  THEN excluded.cursor ELSE sync_meta.cursor END,
                    pr_count = CASE WHEN excluded.last_sync >= sync_meta.last_sync
                                    THEN excluded.pr_count ELSE sync_meta.pr_count END,
                    last_sync = MAX(excluded.last_sync, sync_meta.last_sync),
                    {cursor_col} = excluded.{cursor_col},
                    {last_sync_col} = excluded.{last_sync_col},
                    {count_col} = excluded.{count_col}
                """,
                {
                    "repo": meta.repo,
                    "cursor": meta.cursor,
                    "last_sync": meta.last_sync,
                    "pr_count": meta.pr_count,
                },
            )

    def get_all_sync_meta(self) -> list[SyncMetadata]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM sync_meta ORDER BY repo").fetchall()
        meta: list[SyncMetadata] = []
        for row in rows:
            for scope in SCOPE_COLUMNS:
                scope_meta = _scope_meta(row, scope)
                if scope_meta is not None:
                    meta.append(scope_meta)
        return meta

    def delete_sync_meta(self, repo: str) -> None:
        with self.transaction(write=True) as conn:
            conn.execute("DELETE FROM sync_meta WHERE repo = ?", (repo,))
