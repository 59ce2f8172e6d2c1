"""
Staleness detection for review feedback.

For every comment, count the commits pushed to the same PR after it. When
the comment is attached to a file and the file list of every later commit is
known, only commits touching that file count; otherwise every later commit
counts, since modification cannot be ruled out.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .models import Entry, FileActivityAfter
from .query import QueryFilters
from .store import Store
from .timestamps import parse_iso

logger = logging.getLogger(__name__)

CommitFileResolver = Callable[[str], list[str] | None]


@dataclass
class CheckResult:
    repo: str
    comments_checked: int = 0
    entries_updated: int = 0


@dataclass
class CommitActivity:
    id: str
    created_at: str
    timestamp: datetime
    files: list[str] | None = None


@dataclass
class _ResolverCache:
    resolve: CommitFileResolver | None
    files: dict[str, list[str] | None] = field(default_factory=dict)

    def get(self, commit_id: str) -> list[str] | None:
        if self.resolve is None:
            return None
        if commit_id not in self.files:
            resolved = self.resolve(commit_id)
            self.files[commit_id] = list(resolved) if resolved else None
        return self.files[commit_id]


def build_commit_index(
    entries: Sequence[Entry],
    resolver: _ResolverCache,
) -> dict[int, list[CommitActivity]]:
    """Commits grouped by PR, oldest first."""
    index: dict[int, list[CommitActivity]] = {}
    for entry in entries:
        if entry.type != "commit":
            continue
        index.setdefault(entry.pr, []).append(
            CommitActivity(
                id=entry.id,
                created_at=entry.created_at,
                timestamp=parse_iso(entry.created_at),
                files=resolver.get(entry.id),
            )
        )
    for commits in index.values():
        commits.sort(key=lambda c: c.timestamp)
    return index


def compute_activity_after(entry: Entry, commits: Sequence[CommitActivity]) -> FileActivityAfter:
    comment_time = parse_iso(entry.created_at)
    later = [commit for commit in commits if commit.timestamp > comment_time]

    by_file = bool(entry.file) and all(commit.files for commit in later)
    if by_file:
        later = [commit for commit in later if entry.file in (commit.files or [])]

    if not later:
        return FileActivityAfter(modified=False, commits_touching_file=0)

    latest = later[-1]
    return FileActivityAfter(
        modified=True,
        commits_touching_file=len(later),
        latest_commit=latest.id,
        latest_commit_at=latest.created_at,
    )


def check_repo(
    store: Store,
    repo: str,
    resolve_commit_files: CommitFileResolver | None = None,
) -> CheckResult:
    """
    Recompute file-activity annotations for every comment in a repository.

    All annotations are computed before anything is written; changed ones
    are then written in a single transaction.

    Args:
        store: Mirror to read from and write to
        repo: Repository in owner/repo format
        resolve_commit_files: Optional callback returning the files a commit
            touched, or None when unknown. Called at most once per commit.

    Returns:
        CheckResult with the number of comments examined and entries changed
    """
    filters = QueryFilters(exact_repo=repo, include_frozen=True, exclude_stale=False)
    entries = store.query_entries(filters)
    result = CheckResult(repo=repo)
    if not entries:
        return result

    commit_index = build_commit_index(entries, _ResolverCache(resolve_commit_files))

    updates: list[tuple[str, str, FileActivityAfter]] = []
    for entry in entries:
        if entry.type != "comment":
            continue
        result.comments_checked += 1
        activity = compute_activity_after(entry, commit_index.get(entry.pr, []))
        if activity == entry.file_activity_after:
            continue
        updates.append((entry.id, entry.repo, activity))

    result.entries_updated = store.update_file_activity(updates)
    logger.debug(
        "Checked %s comments in %s, updated %s",
        result.comments_checked,
        repo,
        result.entries_updated,
    )
    return result
