"""
Sync engine: pull PR activity from GitHub into the local mirror.

Each (repo, scope) pair is synced independently:
- First sync or --full: cursor pagination over every PR in the scope
- Later syncs: time-window pagination, newest first, stopping at the first
  PR not updated since the cutoff (the last sync, or an explicit --since)

Each page is written in one transaction, so an interrupted sync leaves every
completed page in place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from .errors import PrwatchError, ValidationError
from .github import GitHubAPIError, PRActivityPage, RateLimitError
from .models import (
    ISSUE_COMMENT,
    REVIEW_COMMENT,
    SYNC_SCOPES,
    CommentReactions,
    Entry,
    PRMetadata,
    SyncMetadata,
    derive_pr_state,
)
from .query import REPO_RE
from .store import Store
from .timestamps import now_iso, parse_iso, to_iso

logger = logging.getLogger(__name__)

SCOPE_STATES: dict[str, tuple[str, ...]] = {
    "open": ("OPEN",),
    "closed": ("CLOSED", "MERGED"),
}
RECONCILE_STATES = ("CLOSED", "MERGED")

Enricher = Callable[[Entry], Entry]


class ActivityClient(Protocol):
    def fetch_pr_activity(
        self,
        owner: str,
        repo: str,
        first: int = 50,
        after: str | None = None,
        states: Sequence[str] = ("OPEN",),
    ) -> PRActivityPage: ...

    def fetch_comment_reactions(self, comment_ids: Sequence[str]) -> dict[str, CommentReactions]: ...


@dataclass
class SyncResult:
    repo: str
    scope: str
    mode: str  # "cursor" or "window"
    entries_added: int = 0
    prs_processed: int = 0
    prs_reconciled: int = 0
    cursor: str | None = None


@dataclass
class SyncReport:
    """Outcome of a multi-repository sync."""

    results: list[SyncResult] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def entries_added(self) -> int:
        return sum(result.entries_added for result in self.results)


def parse_repo(repo: str) -> tuple[str, str]:
    """Split "owner/name", raising ValidationError for anything else."""
    if not REPO_RE.match(repo):
        raise ValidationError(f"Invalid repo format: {repo}. Expected owner/repo")
    owner, name = repo.split("/", 1)
    return owner, name


def map_pr_state(state: str) -> str:
    """GraphQL PR state to stored lifecycle state."""
    return {"MERGED": "merged", "CLOSED": "closed"}.get(state.upper(), "open")


def _login(actor: dict[str, Any] | None) -> str:
    return (actor or {}).get("login") or "unknown"


def pr_metadata(repo: str, node: dict[str, Any]) -> PRMetadata:
    labels = [label["name"] for label in (node.get("labels") or {}).get("nodes") or [] if label.get("name")]
    return PRMetadata(
        repo=repo,
        number=node["number"],
        node_id=node.get("id"),
        state=map_pr_state(node.get("state", "OPEN")),
        is_draft=bool(node.get("isDraft")),
        title=node.get("title"),
        author=_login(node.get("author")),
        branch=node.get("headRefName"),
        labels=labels,
        updated_at=node.get("updatedAt"),
    )


def pr_to_entries(pr: PRMetadata, node: dict[str, Any], captured_at: str) -> list[Entry]:
    """Flatten one PR node into review, comment and commit entries."""
    context = {
        "repo": pr.repo,
        "pr": pr.number,
        "pr_title": pr.title or "",
        "pr_state": derive_pr_state(pr.state, pr.is_draft),
        "pr_author": pr.author or "unknown",
        "pr_branch": pr.branch or "",
        "pr_labels": list(pr.labels) or None,
        "captured_at": captured_at,
    }
    url = node.get("url")
    entries: list[Entry] = []

    for review in (node.get("reviews") or {}).get("nodes") or []:
        entries.append(
            Entry(
                id=review["id"],
                type="review",
                author=_login(review.get("author")),
                body=review.get("body") or None,
                state=(review.get("state") or "").lower() or None,
                created_at=review["createdAt"],
                updated_at=review.get("updatedAt"),
                url=url,
                **context,
            )
        )

    for comment in (node.get("comments") or {}).get("nodes") or []:
        entries.append(
            Entry(
                id=comment["id"],
                type="comment",
                subtype=ISSUE_COMMENT,
                author=_login(comment.get("author")),
                body=comment.get("body"),
                created_at=comment["createdAt"],
                updated_at=comment.get("updatedAt"),
                url=url,
                **context,
            )
        )

    for thread in (node.get("reviewThreads") or {}).get("nodes") or []:
        resolved = thread.get("isResolved")
        for comment in (thread.get("comments") or {}).get("nodes") or []:
            entries.append(
                Entry(
                    id=comment["id"],
                    type="comment",
                    subtype=REVIEW_COMMENT,
                    author=_login(comment.get("author")),
                    body=comment.get("body"),
                    created_at=comment["createdAt"],
                    updated_at=comment.get("updatedAt"),
                    url=url,
                    file=thread.get("path"),
                    line=thread.get("line"),
                    thread_resolved=resolved if isinstance(resolved, bool) else None,
                    **context,
                )
            )

    for item in (node.get("commits") or {}).get("nodes") or []:
        commit = item["commit"]
        author = commit.get("author") or {}
        entries.append(
            Entry(
                id=commit["oid"],
                type="commit",
                author=author.get("name") or author.get("email") or "unknown",
                body=commit.get("message"),
                created_at=commit["committedDate"],
                **context,
            )
        )

    return entries


def _attach_reactions(client: ActivityClient, entries: list[Entry]) -> list[Entry]:
    comment_ids = [entry.id for entry in entries if entry.type == "comment"]
    if not comment_ids:
        return entries
    try:
        reactions = client.fetch_comment_reactions(comment_ids)
    except RateLimitError:
        raise
    except GitHubAPIError as e:
        logger.warning("Skipping reactions for this page: %s", e)
        return entries
    return [
        replace(entry, reactions=reactions[entry.id]) if entry.id in reactions else entry
        for entry in entries
    ]


def _is_older(node: dict[str, Any], cutoff: datetime | None) -> bool:
    if cutoff is None:
        return False
    updated_at = node.get("updatedAt")
    return updated_at is not None and parse_iso(updated_at) < cutoff


def sync_repo(
    client: ActivityClient,
    store: Store,
    repo: str,
    scope: str = "open",
    full: bool = False,
    since: datetime | None = None,
    enrichers: Sequence[Enricher] = (),
    page_size: int = 50,
    fetch_reactions: bool = True,
) -> SyncResult:
    """
    Sync one repository scope into the store.

    Args:
        client: GitHub client (anything with fetch_pr_activity / fetch_comment_reactions)
        store: Target mirror
        repo: Repository in owner/repo format
        scope: "open" or "closed" (closed and merged PRs)
        full: Ignore the previous sync and traverse everything with cursors
        since: Explicit window start; forces time-window pagination
        enrichers: Entry transforms applied in order before writing
        page_size: PRs per GraphQL page
        fetch_reactions: Attach thumbs-up reactions to comments

    Returns:
        SyncResult describing what was written
    """
    owner, name = parse_repo(repo)
    if scope not in SYNC_SCOPES:
        raise ValidationError(f"Invalid sync scope: {scope}. Must be one of: {', '.join(SYNC_SCOPES)}")

    started_at = now_iso()
    meta = store.get_sync_meta(repo, scope)

    cutoff: datetime | None
    if since is None and (meta is None or full):
        mode = "cursor"
        cutoff = None
    else:
        mode = "window"
        # Naive datetimes are taken as UTC
        cutoff = parse_iso(to_iso(since)) if since is not None else parse_iso(meta.last_sync)

    result = SyncResult(repo=repo, scope=scope, mode=mode)
    logger.debug("Syncing %s (%s) using %s pagination, cutoff=%s", repo, scope, mode, cutoff)

    after: str | None = None
    while True:
        page = client.fetch_pr_activity(
            owner, name, first=page_size, after=after, states=SCOPE_STATES[scope]
        )

        nodes: list[dict[str, Any]] = []
        reached_cutoff = False
        for node in page.prs:
            if _is_older(node, cutoff):
                reached_cutoff = True
                break
            nodes.append(node)

        if nodes:
            prs = [pr_metadata(repo, node) for node in nodes]
            entries = [
                entry
                for pr, node in zip(prs, nodes)
                for entry in pr_to_entries(pr, node, started_at)
            ]
            if fetch_reactions:
                entries = _attach_reactions(client, entries)
            for enrich in enrichers:
                entries = [enrich(entry) for entry in entries]
            result.entries_added += store.write_page(prs, entries)
            result.prs_processed += len(nodes)

        if mode == "cursor" and page.end_cursor:
            result.cursor = page.end_cursor

        if reached_cutoff or not page.has_next_page:
            break
        after = page.end_cursor

    if scope == "open" and mode == "window":
        result.prs_reconciled = _reconcile_closed(client, store, repo, owner, name, cutoff, page_size)

    if mode == "window":
        result.cursor = meta.cursor if meta else None
        pr_count = (meta.pr_count if meta else 0) + result.prs_processed
    else:
        pr_count = result.prs_processed

    store.set_sync_meta(
        SyncMetadata(repo=repo, scope=scope, last_sync=started_at, cursor=result.cursor, pr_count=pr_count)
    )
    logger.debug(
        "Synced %s (%s): %s PRs, %s new entries, %s reconciled",
        repo,
        scope,
        result.prs_processed,
        result.entries_added,
        result.prs_reconciled,
    )
    return result


def _reconcile_closed(
    client: ActivityClient,
    store: Store,
    repo: str,
    owner: str,
    name: str,
    cutoff: datetime | None,
    page_size: int,
) -> int:
    """Refresh metadata of PRs closed or merged since the window start."""
    reconciled = 0
    after: str | None = None
    while True:
        page = client.fetch_pr_activity(owner, name, first=page_size, after=after, states=RECONCILE_STATES)
        batch: list[PRMetadata] = []
        reached_cutoff = False
        for node in page.prs:
            if _is_older(node, cutoff):
                reached_cutoff = True
                break
            batch.append(pr_metadata(repo, node))
        if batch:
            reconciled += store.upsert_prs(batch)
        if reached_cutoff or not page.has_next_page:
            break
        after = page.end_cursor
    return reconciled


def sync_repos(
    client: ActivityClient,
    store: Store,
    repos: Iterable[str],
    scopes: Sequence[str] = ("open",),
    **options: Any,
) -> SyncReport:
    """
    Sync several repositories one after another.

    A failing repository is logged and recorded; the remaining ones still
    sync. Raises PrwatchError only when every repository failed.
    """
    report = SyncReport()
    attempted = 0
    for repo in repos:
        attempted += 1
        try:
            for scope in scopes:
                report.results.append(sync_repo(client, store, repo, scope=scope, **options))
        except (GitHubAPIError, PrwatchError) as e:
            logger.error("Sync failed for %s: %s", repo, e)
            report.failures[repo] = str(e)

    if attempted and len(report.failures) == attempted:
        raise PrwatchError(
            "Sync failed for all repositories: "
            + "; ".join(f"{repo}: {error}" for repo, error in report.failures.items())
        )
    return report
