"""
Data model for the prwatch mirror.

- PRMetadata: mutable PR record, overwritten on each sync
- Entry: one unit of PR activity (comment, review, commit, CI, event)
- SyncMetadata: per-repository, per-scope incremental sync state

Annotation columns (reactions, file activity, stack metadata) are stored as
JSON text. Anything that does not parse into the expected shape is read back
as "absent" rather than raising.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

PR_STATES = ("open", "closed", "merged")
DISPLAY_STATES = ("open", "draft", "closed", "merged")
TERMINAL_STATES = ("closed", "merged")
ENTRY_TYPES = ("comment", "review", "commit", "ci", "event")
SYNC_SCOPES = ("open", "closed")

ISSUE_COMMENT = "issue_comment"
REVIEW_COMMENT = "review_comment"


def derive_pr_state(state: str, is_draft: bool) -> str:
    """
    Derive the display state of a PR from its stored lifecycle and draft flag.

    Closed and merged always win: a stale draft flag never turns a finished
    PR back into "draft".
    """
    if state in TERMINAL_STATES:
        return state
    if is_draft:
        return "draft"
    return state


@dataclass
class StackMetadata:
    """Stack membership for PRs managed by a stacking tool (Graphite)."""

    stack_id: str | None = None
    stack_position: int | None = None
    stack_size: int | None = None
    parent_pr: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> StackMetadata | None:
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                stack_id=_opt_str(data.get("stack_id")),
                stack_position=_opt_int(data.get("stack_position")),
                stack_size=_opt_int(data.get("stack_size")),
                parent_pr=_opt_int(data.get("parent_pr")),
            )
        except (TypeError, ValueError):
            return None


@dataclass
class FileActivityAfter:
    """Whether the commented file was modified by later commits."""

    modified: bool
    commits_touching_file: int
    latest_commit: str | None = None
    latest_commit_at: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> FileActivityAfter | None:
        if not isinstance(data, dict):
            return None
        modified = data.get("modified")
        count = data.get("commits_touching_file")
        if not isinstance(modified, bool) or not isinstance(count, int) or count < 0:
            return None
        return cls(
            modified=modified,
            commits_touching_file=count,
            latest_commit=_opt_str(data.get("latest_commit")),
            latest_commit_at=_opt_str(data.get("latest_commit_at")),
        )


@dataclass
class CommentReactions:
    """Reaction summary for a comment."""

    thumbs_up_by: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> CommentReactions | None:
        if not isinstance(data, dict):
            return None
        users = data.get("thumbs_up_by")
        if not isinstance(users, list):
            return None
        return cls(thumbs_up_by=[str(user) for user in users])


@dataclass
class PRMetadata:
    """Stored pull request (source of truth for PR state)."""

    repo: str
    number: int
    state: str
    is_draft: bool = False
    title: str | None = None
    author: str | None = None
    branch: str | None = None
    labels: list[str] = field(default_factory=list)
    updated_at: str | None = None
    node_id: str | None = None
    frozen_at: str | None = None

    @property
    def display_state(self) -> str:
        return derive_pr_state(self.state, self.is_draft)


@dataclass
class Entry:
    """A single activity entry, denormalized with its PR context."""

    id: str
    repo: str
    pr: int
    type: str
    author: str
    created_at: str
    captured_at: str
    pr_title: str = ""
    pr_state: str = "open"
    pr_author: str = "unknown"
    pr_branch: str = ""
    pr_labels: list[str] | None = None
    subtype: str | None = None
    body: str | None = None
    state: str | None = None
    updated_at: str | None = None
    url: str | None = None
    file: str | None = None
    line: int | None = None
    # True = resolved, False = unresolved, None = unknown / not a thread comment
    thread_resolved: bool | None = None
    reactions: CommentReactions | None = None
    file_activity_after: FileActivityAfter | None = None
    graphite: StackMetadata | None = None

    @property
    def is_review_comment(self) -> bool:
        return self.type == "comment" and self.subtype == REVIEW_COMMENT

    @property
    def last_activity_at(self) -> str:
        return self.updated_at or self.created_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output, dropping unset optional fields."""
        data = asdict(self)
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class SyncMetadata:
    """Incremental sync state for one repository and scope."""

    repo: str
    scope: str
    last_sync: str
    cursor: str | None = None
    pr_count: int = 0


# =========================================================================
# JSON column helpers
# =========================================================================


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "__dataclass_fields__"):
        value = {k: v for k, v in asdict(value).items() if v is not None}
    return json.dumps(value)


def load_json(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def load_labels(raw: str | None) -> list[str]:
    parsed = load_json(raw)
    if isinstance(parsed, list):
        return [str(label) for label in parsed]
    return []


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _opt_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("bool is not an int")
    return int(value)
