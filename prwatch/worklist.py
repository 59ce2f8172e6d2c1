"""
Per-PR worklist built from a query result.

Each worklist item rolls up all matching activity for one PR: counts per
entry type, review outcomes, and the most recent activity. Nothing here
touches the database.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from .models import Entry, StackMetadata
from .timestamps import parse_iso

REVIEW_OUTCOMES = ("approved", "changes_requested", "commented", "dismissed")

_COUNT_FIELDS = {
    "comment": "comments",
    "review": "reviews",
    "commit": "commits",
    "ci": "ci",
    "event": "events",
}


@dataclass
class WorklistCounts:
    comments: int = 0
    reviews: int = 0
    commits: int = 0
    ci: int = 0
    events: int = 0


@dataclass
class WorklistReviewStates:
    approved: int = 0
    changes_requested: int = 0
    commented: int = 0
    dismissed: int = 0


@dataclass
class WorklistEntry:
    repo: str
    pr: int
    pr_title: str
    pr_state: str
    pr_author: str
    pr_branch: str
    last_activity_at: str
    latest_activity_type: str
    latest_activity_author: str
    counts: WorklistCounts = field(default_factory=WorklistCounts)
    review_states: WorklistReviewStates = field(default_factory=WorklistReviewStates)
    pr_labels: list[str] | None = None
    graphite: StackMetadata | None = None

    @property
    def last_activity(self) -> datetime:
        return parse_iso(self.last_activity_at)

    @property
    def stack_id(self) -> str | None:
        return self.graphite.stack_id if self.graphite else None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {key: value for key, value in data.items() if value is not None}


def _new_item(entry: Entry) -> WorklistEntry:
    return WorklistEntry(
        repo=entry.repo,
        pr=entry.pr,
        pr_title=entry.pr_title,
        pr_state=entry.pr_state,
        pr_author=entry.pr_author,
        pr_branch=entry.pr_branch,
        last_activity_at=entry.last_activity_at,
        latest_activity_type=entry.type,
        latest_activity_author=entry.author,
        pr_labels=entry.pr_labels,
        graphite=entry.graphite,
    )


def build_worklist(entries: Iterable[Entry]) -> list[WorklistEntry]:
    """Reduce entries to one item per (repo, pr), in first-seen order."""
    items: dict[tuple[str, int], WorklistEntry] = {}
    latest: dict[tuple[str, int], datetime] = {}

    for entry in entries:
        key = (entry.repo, entry.pr)
        item = items.get(key)
        if item is None:
            item = _new_item(entry)
            items[key] = item
            latest[key] = parse_iso(entry.last_activity_at)

        count_field = _COUNT_FIELDS.get(entry.type)
        if count_field:
            setattr(item.counts, count_field, getattr(item.counts, count_field) + 1)

        if entry.type == "review" and entry.state:
            outcome = entry.state.lower()
            if outcome in REVIEW_OUTCOMES:
                setattr(item.review_states, outcome, getattr(item.review_states, outcome) + 1)

        if item.graphite is None and entry.graphite is not None:
            item.graphite = entry.graphite
        if item.pr_labels is None and entry.pr_labels:
            item.pr_labels = entry.pr_labels
        item.pr_state = entry.pr_state

        activity = parse_iso(entry.last_activity_at)
        if activity > latest[key]:
            latest[key] = activity
            item.last_activity_at = entry.last_activity_at
            item.latest_activity_type = entry.type
            item.latest_activity_author = entry.author

    return list(items.values())


def sort_worklist(items: Iterable[WorklistEntry]) -> list[WorklistEntry]:
    """
    Stack groups first, then everything else by recency.

    Within a group, items are ordered by stack position (ties by recency);
    groups are ordered by their most recently active member.
    """
    # Stack ids are branch names, unique only within a repo
    groups: dict[tuple[str, str], list[WorklistEntry]] = {}
    unstacked: list[WorklistEntry] = []
    for item in items:
        if item.stack_id:
            groups.setdefault((item.repo, item.stack_id), []).append(item)
        else:
            unstacked.append(item)

    def position(item: WorklistEntry) -> float:
        if item.graphite is None or item.graphite.stack_position is None:
            return float("inf")
        return item.graphite.stack_position

    ordered_groups = []
    for group in groups.values():
        # Two stable sorts: recency first, then position
        group.sort(key=lambda item: item.last_activity, reverse=True)
        group.sort(key=position)
        ordered_groups.append((max(item.last_activity for item in group), group))
    ordered_groups.sort(key=lambda pair: pair[0], reverse=True)

    unstacked.sort(key=lambda item: item.last_activity, reverse=True)

    result: list[WorklistEntry] = []
    for _, group in ordered_groups:
        result.extend(group)
    result.extend(unstacked)
    return result


def worklist_to_dicts(items: Iterable[WorklistEntry]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in items]
