from __future__ import annotations

import sqlite3
import time

import pytest

from prwatch.errors import NotFoundError, ValidationError
from prwatch.models import REVIEW_COMMENT, FileActivityAfter, SyncMetadata
from prwatch.query import QueryFilters
from prwatch.store import Store

REPO = "acme/widgets"


def test_resync_is_idempotent(store, make_pr, make_entry):
    prs = [make_pr(1)]
    entries = [make_entry("c1"), make_entry("r1", type="review", state="approved")]

    assert store.write_page(prs, entries) == 2
    assert store.write_page(prs, entries) == 0
    assert store.count_entries(QueryFilters(exact_repo=REPO)) == 2


def test_state_is_read_from_pr_table(store, make_pr, make_entry):
    store.write_page([make_pr(1)], [make_entry("c1", pr_state="open")])
    store.upsert_pr(make_pr(1, state="merged"))

    [entry] = store.query_entries(QueryFilters(exact_repo=REPO))
    assert entry.pr_state == "merged"


def test_draft_derivation(store, make_pr, make_entry):
    store.write_page(
        [
            make_pr(1, is_draft=True),
            make_pr(2),
            make_pr(3, state="closed", is_draft=True),
            make_pr(4, state="merged", is_draft=True),
        ],
        [make_entry("a", pr=1), make_entry("b", pr=2), make_entry("c", pr=3), make_entry("d", pr=4)],
    )

    assert [e.pr for e in store.query_entries(QueryFilters(states=["draft"]))] == [1]
    assert [e.pr for e in store.query_entries(QueryFilters(states=["open"]))] == [2]
    # A stale draft flag does not make a closed or merged PR a draft
    assert [e.pr for e in store.query_entries(QueryFilters(states=["closed"]))] == [3]
    assert store.get_pr(REPO, 3).display_state == "closed"
    assert [e.pr for e in store.query_entries(QueryFilters(states=["merged"]))] == [4]
    assert store.get_pr(REPO, 4).display_state == "merged"


def test_label_filter_is_case_insensitive_substring(store, make_pr, make_entry):
    store.write_page(
        [make_pr(1, labels=["Needs-Review"]), make_pr(2, labels=["wip"])],
        [make_entry("a", pr=1), make_entry("b", pr=2)],
    )

    entries = store.query_entries(QueryFilters(label="review"))
    assert [e.id for e in entries] == ["a"]
    assert entries[0].pr_labels == ["Needs-Review"]


def test_repo_filter_is_substring_without_wildcards(store, make_pr, make_entry):
    store.write_page([make_pr(1)], [make_entry("a")])
    store.write_page([make_pr(1, repo="acme/gadgets")], [make_entry("b", repo="acme/gadgets")])

    assert {e.id for e in store.query_entries(QueryFilters(repo="acme"))} == {"a", "b"}
    assert [e.id for e in store.query_entries(QueryFilters(repo="widg"))] == ["a"]
    assert store.query_entries(QueryFilters(repo="acme/%")) == []


def test_orphaned_and_stale_comments(store, make_pr, make_entry):
    store.write_page(
        [make_pr(1, state="merged"), make_pr(2)],
        [
            make_entry("orphan", pr=1, subtype=REVIEW_COMMENT, file="a.py", thread_resolved=False),
            make_entry("resolved", pr=1, subtype=REVIEW_COMMENT, file="a.py", thread_resolved=True),
            make_entry("unknown", pr=1, subtype=REVIEW_COMMENT, file="a.py"),
            make_entry("open", pr=2, subtype=REVIEW_COMMENT, file="a.py", thread_resolved=False),
        ],
    )

    orphaned = store.query_entries(QueryFilters(orphaned=True))
    assert [e.id for e in orphaned] == ["orphan"]

    default_ids = {e.id for e in store.query_entries(QueryFilters())}
    assert default_ids == {"resolved", "unknown", "open"}

    all_ids = {e.id for e in store.query_entries(QueryFilters(exclude_stale=False))}
    assert all_ids == {"orphan", "resolved", "unknown", "open"}

    # Resolving the thread on the next sync takes it out of the orphaned set
    store.write_page(
        [make_pr(1, state="merged")],
        [make_entry("orphan", pr=1, subtype=REVIEW_COMMENT, file="a.py", thread_resolved=True)],
    )
    assert store.query_entries(QueryFilters(orphaned=True)) == []


def test_orphaned_rejects_open_states(store):
    with pytest.raises(ValidationError):
        store.query_entries(QueryFilters(orphaned=True, states=["open"]))


def test_since_and_type_filters(store, make_pr, make_entry):
    from prwatch.timestamps import parse_iso

    store.write_page(
        [make_pr(1)],
        [
            make_entry("old", created_at="2024-01-01T00:00:00Z"),
            make_entry("new", created_at="2024-03-01T00:00:00Z"),
            make_entry("sha", type="commit", created_at="2024-03-02T00:00:00Z"),
        ],
    )

    recent = store.query_entries(QueryFilters(since=parse_iso("2024-02-01T00:00:00Z")))
    assert [e.id for e in recent] == ["sha", "new"]
    commits = store.query_entries(QueryFilters(type="commit"))
    assert [e.id for e in commits] == ["sha"]


def test_memory_filters_paginate_after_filtering(store, make_pr, make_entry):
    entries = [
        make_entry(f"c{i}", author="dependabot[bot]" if i % 2 else "bob", created_at=f"2024-01-0{i}T00:00:00Z")
        for i in range(1, 8)
    ]
    store.write_page([make_pr(1)], entries)

    filters = QueryFilters(exclude_bots=True)
    assert [e.id for e in store.query_entries(filters)] == ["c6", "c4", "c2"]
    assert [e.id for e in store.query_entries(filters, limit=1, offset=1)] == ["c4"]
    assert store.count_entries(filters) == 3

    by_name = QueryFilters(exclude_authors=["BOB"])
    assert all(e.author != "bob" for e in store.query_entries(by_name))


def test_sql_pagination(store, make_pr, make_entry):
    store.write_page(
        [make_pr(1)],
        [make_entry(f"c{i}", created_at=f"2024-01-0{i}T00:00:00Z") for i in range(1, 6)],
    )
    assert [e.id for e in store.query_entries(limit=2)] == ["c5", "c4"]
    assert [e.id for e in store.query_entries(offset=3)] == ["c2", "c1"]

    with pytest.raises(ValidationError):
        store.query_entries(limit=-1)


def test_invalid_filters(store):
    with pytest.raises(ValidationError):
        store.query_entries(QueryFilters(type="pushed"))
    with pytest.raises(ValidationError):
        store.query_entries(QueryFilters(repo="acme", exact_repo=REPO))
    with pytest.raises(ValidationError):
        store.query_entries(QueryFilters(exact_repo="not-a-repo"))


def test_annotations_survive_resync(store, make_pr, make_entry):
    store.write_page([make_pr(1)], [make_entry("c1", body="first")])
    activity = FileActivityAfter(modified=True, commits_touching_file=2, latest_commit="abc")
    store.update_entry("c1", REPO, file_activity_after=activity)

    store.write_page([make_pr(1)], [make_entry("c1", body="edited")])

    entry = store.require_entry("c1", REPO)
    assert entry.body == "edited"
    assert entry.file_activity_after == activity


def test_update_unknown_entry_raises(store):
    with pytest.raises(NotFoundError):
        store.update_entry("missing", REPO, body="x")
    with pytest.raises(NotFoundError):
        store.require_entry("missing", REPO)


def test_entry_requires_pr_row(store, make_entry):
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_entries([make_entry("c1", pr=42)])
    assert store.get_entry("c1", REPO) is None


def test_sync_meta_is_per_scope(store):
    store.set_sync_meta(SyncMetadata(repo=REPO, scope="open", last_sync="2024-01-02T00:00:00Z", cursor="o", pr_count=4))
    store.set_sync_meta(SyncMetadata(repo=REPO, scope="closed", last_sync="2024-01-01T00:00:00Z", pr_count=9))

    open_meta = store.get_sync_meta(REPO, "open")
    closed_meta = store.get_sync_meta(REPO, "closed")
    assert (open_meta.last_sync, open_meta.cursor, open_meta.pr_count) == ("2024-01-02T00:00:00Z", "o", 4)
    assert (closed_meta.last_sync, closed_meta.pr_count) == ("2024-01-01T00:00:00Z", 9)
    assert {m.scope for m in store.get_all_sync_meta()} == {"open", "closed"}

    store.delete_sync_meta(REPO)
    assert store.get_sync_meta(REPO, "open") is None


def test_clear_repo(store, make_pr, make_entry):
    store.write_page([make_pr(1)], [make_entry("c1")])
    store.set_sync_meta(SyncMetadata(repo=REPO, scope="open", last_sync="2024-01-01T00:00:00Z"))

    store.clear_repo(REPO)

    assert store.get_repos() == []
    assert store.get_pr(REPO, 1) is None
    assert store.get_sync_meta(REPO, "open") is None


def test_get_prs_by_state(store, make_pr):
    store.upsert_prs([make_pr(1), make_pr(2, is_draft=True), make_pr(3, state="merged")])
    assert [p.number for p in store.get_prs_by_state(REPO, ["open", "draft"])] == [1, 2]
    assert [p.number for p in store.get_prs_by_state(REPO, ["merged"])] == [3]


def test_writers_wait_for_the_write_lock(tmp_path, make_pr, make_entry):
    path = tmp_path / "prwatch.db"
    first = Store(db_path=path)
    second = Store(db_path=path, timeout=0.2)

    with first.transaction(write=True) as conn:
        # The read inside a write transaction cannot be overtaken by another writer
        assert conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0] == 0

        started = time.monotonic()
        with pytest.raises(sqlite3.OperationalError, match="locked"):
            second.write_page([make_pr(2)], [make_entry("b", pr=2)])
        assert time.monotonic() - started >= 0.15

        conn.execute(
            "INSERT INTO prs (repo, number, state) VALUES (?, ?, 'open')", (REPO, 1)
        )

    assert first.get_pr(REPO, 1) is not None
    assert second.get_pr(REPO, 2) is None

    # Once the lock is released the second writer goes through
    assert second.write_page([make_pr(2)], [make_entry("b", pr=2)]) == 1
