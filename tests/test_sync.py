from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from unittest.mock import patch

import pytest

from prwatch.errors import PrwatchError, ValidationError
from prwatch.github import GitHubAPIError, PRActivityPage, RateLimitError
from prwatch.models import ISSUE_COMMENT, REVIEW_COMMENT, CommentReactions
from prwatch.query import QueryFilters
from prwatch.sync import pr_metadata, pr_to_entries, sync_repo, sync_repos
from prwatch.timestamps import parse_iso

REPO = "acme/widgets"


def pr_node(number, state="OPEN", updated_at="2024-01-05T00:00:00Z", **kwargs):
    return {
        "id": f"PR_{number}",
        "number": number,
        "title": kwargs.get("title", f"PR {number}"),
        "state": state,
        "isDraft": kwargs.get("is_draft", False),
        "author": {"login": "alice"},
        "headRefName": f"feature-{number}",
        "updatedAt": updated_at,
        "url": f"https://github.com/{REPO}/pull/{number}",
        "labels": {"nodes": [{"name": label} for label in kwargs.get("labels", [])]},
        "reviews": {"nodes": kwargs.get("reviews", [])},
        "comments": {"nodes": kwargs.get("comments", [])},
        "reviewThreads": {"nodes": kwargs.get("threads", [])},
        "commits": {"nodes": kwargs.get("commits", [])},
    }


def comment(comment_id, author="bob", body="hi", created_at="2024-01-02T00:00:00Z"):
    return {"id": comment_id, "author": {"login": author}, "body": body, "createdAt": created_at}


class FakeClient:
    """In-memory stand-in for GitHubClient, paging newest first."""

    def __init__(self, prs=(), reactions=None, reactions_error=None, fail_repos=()):
        self.prs = list(prs)
        self.reactions = reactions or {}
        self.reactions_error = reactions_error
        self.fail_repos = set(fail_repos)
        self.calls = []

    def fetch_pr_activity(self, owner, repo, first=50, after=None, states=("OPEN",)):
        if f"{owner}/{repo}" in self.fail_repos:
            raise GitHubAPIError("GitHub API error: 502 - bad gateway", 502)
        self.calls.append((tuple(states), after))
        matching = sorted(
            (node for node in self.prs if node["state"] in states),
            key=lambda node: node["updatedAt"],
            reverse=True,
        )
        start = int(after) if after else 0
        chunk = matching[start:start + first]
        end = start + len(chunk)
        return PRActivityPage(
            prs=chunk,
            has_next_page=end < len(matching),
            end_cursor=str(end) if chunk else None,
        )

    def fetch_comment_reactions(self, comment_ids):
        if self.reactions_error is not None:
            raise self.reactions_error
        return {i: self.reactions[i] for i in comment_ids if i in self.reactions}


def test_pr_to_entries_maps_every_activity_kind():
    node = pr_node(
        7,
        is_draft=True,
        labels=["bug"],
        reviews=[{"id": "R_1", "author": {"login": "bob"}, "body": "", "state": "CHANGES_REQUESTED",
                  "createdAt": "2024-01-02T00:00:00Z"}],
        comments=[comment("IC_1")],
        threads=[{"id": "T_1", "path": "src/app.py", "line": 12, "isResolved": False,
                  "comments": {"nodes": [comment("RC_1", author="carol")]}}],
        commits=[{"commit": {"oid": "abc123", "message": "fix", "author": {"name": "Alice", "email": "a@x"},
                             "committedDate": "2024-01-03T00:00:00Z"}}],
    )
    pr = pr_metadata(REPO, node)
    entries = {e.id: e for e in pr_to_entries(pr, node, "2024-01-10T00:00:00Z")}

    assert pr.labels == ["bug"]
    assert entries["R_1"].type == "review"
    assert entries["R_1"].state == "changes_requested"
    assert entries["R_1"].body is None
    assert entries["IC_1"].subtype == ISSUE_COMMENT
    assert entries["RC_1"].subtype == REVIEW_COMMENT
    assert (entries["RC_1"].file, entries["RC_1"].line) == ("src/app.py", 12)
    assert entries["RC_1"].thread_resolved is False
    assert entries["abc123"].type == "commit"
    assert entries["abc123"].author == "Alice"
    assert all(e.pr_state == "draft" for e in entries.values())
    assert all(e.captured_at == "2024-01-10T00:00:00Z" for e in entries.values())


def test_first_sync_walks_every_page(store):
    client = FakeClient([
        pr_node(1, updated_at="2024-01-01T00:00:00Z", comments=[comment("IC_1")]),
        pr_node(2, updated_at="2024-01-02T00:00:00Z", comments=[comment("IC_2")]),
        pr_node(3, updated_at="2024-01-03T00:00:00Z"),
    ])

    result = sync_repo(client, store, REPO, page_size=1, fetch_reactions=False)

    assert result.mode == "cursor"
    assert result.prs_processed == 3
    assert result.entries_added == 2
    assert len(client.calls) == 3
    meta = store.get_sync_meta(REPO, "open")
    assert meta.cursor == "3"
    assert meta.pr_count == 3


def test_resync_of_unchanged_snapshot_adds_nothing(store):
    client = FakeClient([pr_node(1, comments=[comment("IC_1")], labels=["bug"])])
    sync_repo(client, store, REPO, fetch_reactions=False)
    before = store.get_pr(REPO, 1)

    result = sync_repo(client, store, REPO, full=True, fetch_reactions=False)

    assert result.entries_added == 0
    assert store.get_pr(REPO, 1) == before
    assert store.count_entries(QueryFilters(exact_repo=REPO)) == 1


def test_window_sync_stops_at_cutoff(store):
    client = FakeClient([
        pr_node(1, updated_at="2024-01-05T00:00:00Z"),
        pr_node(2, updated_at="2024-01-15T00:00:00Z"),
        pr_node(3, updated_at="2024-01-20T00:00:00Z"),
    ])

    result = sync_repo(
        client, store, REPO, since=parse_iso("2024-01-10T00:00:00Z"), page_size=1, fetch_reactions=False
    )

    assert result.mode == "window"
    assert result.prs_processed == 2
    assert store.get_pr(REPO, 1) is None
    open_calls = [call for call in client.calls if call[0] == ("OPEN",)]
    assert len(open_calls) == 3


def test_naive_since_is_taken_as_utc(store):
    client = FakeClient([
        pr_node(1, updated_at="2024-01-05T00:00:00Z"),
        pr_node(2, updated_at="2024-01-15T00:00:00Z"),
    ])

    result = sync_repo(client, store, REPO, since=datetime(2024, 1, 10), fetch_reactions=False)

    assert result.mode == "window"
    assert result.prs_processed == 1
    assert store.get_pr(REPO, 2) is not None
    assert store.get_pr(REPO, 1) is None


def test_incremental_sync_catches_merged_prs(store):
    client = FakeClient([pr_node(5, updated_at="2024-01-05T00:00:00Z", comments=[comment("IC_5")])])
    with patch("prwatch.sync.now_iso", return_value="2024-01-10T00:00:00Z"):
        sync_repo(client, store, REPO, fetch_reactions=False)

    # Merged after the last sync, so the open-scope query no longer returns it
    client.prs = [pr_node(5, state="MERGED", updated_at="2024-01-15T00:00:00Z", comments=[comment("IC_5")])]
    with patch("prwatch.sync.now_iso", return_value="2024-01-20T00:00:00Z"):
        result = sync_repo(client, store, REPO, fetch_reactions=False)

    assert result.mode == "window"
    assert result.prs_reconciled == 1
    [entry] = store.query_entries(QueryFilters(exact_repo=REPO))
    assert entry.pr_state == "merged"
    meta = store.get_sync_meta(REPO, "open")
    assert meta.last_sync == "2024-01-20T00:00:00Z"
    assert meta.pr_count == 1


def test_scopes_track_state_separately(store):
    client = FakeClient([pr_node(1), pr_node(2, state="CLOSED"), pr_node(3, state="MERGED")])

    closed = sync_repo(client, store, REPO, scope="closed", fetch_reactions=False)
    opened = sync_repo(client, store, REPO, scope="open", fetch_reactions=False)

    assert closed.prs_processed == 2
    assert opened.mode == "cursor"
    assert store.get_pr(REPO, 3).state == "merged"
    assert store.get_sync_meta(REPO, "closed").pr_count == 2

    with pytest.raises(ValidationError):
        sync_repo(client, store, REPO, scope="everything")


def test_enrichers_run_in_order(store):
    client = FakeClient([pr_node(1, comments=[comment("IC_1", body="hi")])])
    enrichers = [
        lambda e: replace(e, body=f"{e.body}-a"),
        lambda e: replace(e, body=f"{e.body}-b"),
    ]

    sync_repo(client, store, REPO, enrichers=enrichers, fetch_reactions=False)

    assert store.require_entry("IC_1", REPO).body == "hi-a-b"


def test_reactions_are_attached(store):
    client = FakeClient(
        [pr_node(1, comments=[comment("IC_1"), comment("IC_2")])],
        reactions={"IC_1": CommentReactions(thumbs_up_by=["carol"])},
    )

    sync_repo(client, store, REPO)

    assert store.require_entry("IC_1", REPO).reactions.thumbs_up_by == ["carol"]
    assert store.require_entry("IC_2", REPO).reactions is None


def test_reaction_errors_do_not_block_sync(store):
    client = FakeClient(
        [pr_node(1, comments=[comment("IC_1")])],
        reactions_error=GitHubAPIError("GraphQL errors: boom"),
    )

    result = sync_repo(client, store, REPO)

    assert result.entries_added == 1


def test_rate_limit_during_reactions_aborts(store):
    client = FakeClient([pr_node(1, comments=[comment("IC_1")])], reactions_error=RateLimitError())

    with pytest.raises(RateLimitError):
        sync_repo(client, store, REPO)
    assert store.get_sync_meta(REPO, "open") is None


def test_sync_repos_reports_partial_failures(store):
    client = FakeClient([pr_node(1)], fail_repos={"acme/broken"})

    report = sync_repos(client, store, [REPO, "acme/broken"], fetch_reactions=False)

    assert [r.repo for r in report.results] == [REPO]
    assert "acme/broken" in report.failures


def test_sync_repos_raises_when_everything_fails(store):
    client = FakeClient(fail_repos={"acme/broken"})

    with pytest.raises(PrwatchError):
        sync_repos(client, store, ["acme/broken", "not a repo"])


def test_invalid_repo(store):
    with pytest.raises(ValidationError):
        sync_repo(FakeClient(), store, "widgets")
