"""
Query filters and the SQL predicate builder.

Filters compile into a WHERE clause over ``entries e JOIN prs p``. Every
value is bound as a named parameter; only fixed clause templates and
generated parameter names ever reach the SQL text.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .authors import DEFAULT_BOT_PATTERNS, is_bot, is_excluded_author
from .errors import ValidationError
from .models import DISPLAY_STATES, ENTRY_TYPES, TERMINAL_STATES, Entry
from .timestamps import to_iso

REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

CustomFilter = Callable[[Entry, str], bool]


class QueryPlugin(Protocol):
    """Anything that contributes named in-memory predicates for ``QueryFilters.custom``."""

    def query_filters(self) -> Mapping[str, CustomFilter]: ...


@dataclass
class QueryFilters:
    """Typed filter set for entry queries. Unset fields do not filter."""

    id: str | None = None
    repo: str | None = None
    exact_repo: str | None = None
    pr: int | list[int] | None = None
    author: str | None = None
    type: str | list[str] | None = None
    states: list[str] | None = None
    label: str | None = None
    since: datetime | None = None
    exclude_authors: list[str] = field(default_factory=list)
    exclude_bots: bool = False
    bot_patterns: Sequence[re.Pattern[str]] | None = None
    orphaned: bool = False
    exclude_stale: bool = True
    include_frozen: bool = False
    custom: dict[str, str] = field(default_factory=dict)

    @property
    def types(self) -> list[str]:
        if self.type is None:
            return []
        return [self.type] if isinstance(self.type, str) else list(self.type)

    @property
    def prs(self) -> list[int]:
        if self.pr is None:
            return []
        return [self.pr] if isinstance(self.pr, int) else list(self.pr)

    @property
    def has_memory_filters(self) -> bool:
        """True when some filtering happens after the SQL query."""
        return bool(self.exclude_authors or self.exclude_bots or self.custom)

    def validate(self) -> None:
        """Raise ValidationError for contradictory or malformed filters."""
        for entry_type in self.types:
            if entry_type not in ENTRY_TYPES:
                raise ValidationError(
                    f"Invalid type: {entry_type}. Must be one of: {', '.join(ENTRY_TYPES)}"
                )
        for state in self.states or []:
            if state not in DISPLAY_STATES:
                raise ValidationError(
                    f"Invalid state: {state}. Must be one of: {', '.join(DISPLAY_STATES)}"
                )
        if self.repo and self.exact_repo:
            raise ValidationError("Use either repo (substring) or exact_repo, not both")
        if self.exact_repo is not None and not REPO_RE.match(self.exact_repo):
            raise ValidationError(f"Invalid repo format: {self.exact_repo}. Expected owner/repo")
        if self.orphaned and self.states and not any(s in TERMINAL_STATES for s in self.states):
            raise ValidationError(
                "orphaned only matches closed or merged PRs; "
                f"it cannot be combined with states {', '.join(self.states)}"
            )


class WhereBuilder:
    """Accumulates AND-ed clauses with named parameters."""

    def __init__(self) -> None:
        self.conditions: list[str] = []
        self.params: dict[str, Any] = {}

    def add(self, clause: str, **params: Any) -> None:
        self.conditions.append(clause)
        self.params.update(params)

    def placeholders(self, prefix: str, values: Iterable[Any]) -> str:
        """Bind each value as ``:prefix_N`` and return the comma-joined names."""
        names = []
        for i, value in enumerate(values):
            name = f"{prefix}_{i}"
            self.params[name] = value
            names.append(f":{name}")
        return ", ".join(names)

    @property
    def sql(self) -> str:
        if not self.conditions:
            return ""
        return "WHERE " + " AND ".join(self.conditions)


def state_condition(states: Sequence[str], builder: WhereBuilder, alias: str = "p") -> str | None:
    """
    Map display states onto stored (state, is_draft) pairs.

    "open" means open and not draft, "draft" means open and draft; closed and
    merged are matched directly.
    """
    parts: list[str] = []
    direct: list[str] = []
    for state in states:
        if state == "draft":
            parts.append(f"({alias}.state = 'open' AND {alias}.is_draft = 1)")
        elif state == "open":
            parts.append(f"({alias}.state = 'open' AND {alias}.is_draft = 0)")
        elif state not in direct:
            direct.append(state)
    if direct:
        parts.append(f"{alias}.state IN ({builder.placeholders('state', direct)})")
    if not parts:
        return None
    return "(" + " OR ".join(parts) + ")"


def build_where(filters: QueryFilters) -> WhereBuilder:
    """Compile every present filter into one conjunctive WHERE clause."""
    builder = WhereBuilder()

    if filters.id:
        builder.add("e.id = :id", id=filters.id)

    if filters.exact_repo:
        builder.add("e.repo = :exact_repo", exact_repo=filters.exact_repo)
    elif filters.repo:
        builder.add("instr(e.repo, :repo) > 0", repo=filters.repo)

    prs = filters.prs
    if len(prs) == 1:
        builder.add("e.pr = :pr", pr=prs[0])
    elif prs:
        builder.add(f"e.pr IN ({builder.placeholders('pr', prs)})")

    if filters.author:
        builder.add("e.author = :author", author=filters.author)

    types = filters.types
    if types:
        builder.add(f"e.type IN ({builder.placeholders('type', types)})")

    if filters.states:
        condition = state_condition(filters.states, builder)
        if condition:
            builder.add(condition)

    if filters.label:
        builder.add(
            "EXISTS (SELECT 1 FROM json_each(p.labels) AS label "
            "WHERE instr(LOWER(label.value), :label) > 0)",
            label=filters.label.lower(),
        )

    if filters.since is not None:
        builder.add("e.created_at >= :since", since=to_iso(filters.since))

    if filters.orphaned:
        builder.add("e.subtype = 'review_comment'")
        builder.add("e.thread_resolved = 0")
        builder.add("p.state IN ('closed', 'merged')")
    elif filters.exclude_stale:
        # NULL thread_resolved counts as resolved so unsynced history stays visible
        builder.add(
            "NOT (e.subtype = 'review_comment' AND COALESCE(e.thread_resolved, 1) = 0 "
            "AND p.state IN ('closed', 'merged'))"
        )

    if not filters.include_frozen:
        builder.add("(p.frozen_at IS NULL OR e.created_at <= p.frozen_at)")

    return builder


def matches_memory_filters(
    entry: Entry,
    filters: QueryFilters,
    plugins: Sequence[QueryPlugin] = (),
) -> bool:
    """Author exclusion, bot exclusion and plugin predicates."""
    if filters.exclude_authors and is_excluded_author(entry.author, filters.exclude_authors):
        return False
    if filters.exclude_bots:
        patterns = filters.bot_patterns if filters.bot_patterns is not None else DEFAULT_BOT_PATTERNS
        if is_bot(entry.author, patterns):
            return False
    for name, value in filters.custom.items():
        for plugin in plugins:
            predicate = plugin.query_filters().get(name)
            if predicate is not None and not predicate(entry, value):
                return False
    return True
