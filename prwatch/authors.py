"""
Author and bot exclusion.

Bot detection uses name patterns (GitHub App suffixes, Actions accounts)
plus a list of well-known review bots whose logins look like people.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from re import Pattern

from .errors import ValidationError
from .models import Entry

DEFAULT_BOT_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"\[bot\]$", re.IGNORECASE),  # GitHub Apps, e.g. dependabot[bot]
    re.compile(r"^github-actions", re.IGNORECASE),
    re.compile(r"-bot$", re.IGNORECASE),
)

DEFAULT_EXCLUDE_AUTHORS: tuple[str, ...] = (
    "coderabbitai",
    "greptile-apps",
    "chatgpt-codex-connector",
    "dependabot",
    "renovate",
    "codecov",
    "netlify",
    "vercel",
)


def compile_bot_patterns(patterns: Iterable[str]) -> tuple[Pattern[str], ...]:
    """Compile user-supplied bot patterns (case-insensitive)."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise ValidationError(f"Invalid bot pattern {pattern!r}: {e}") from e
    return tuple(compiled)


def is_bot(author: str, patterns: Sequence[Pattern[str]] = DEFAULT_BOT_PATTERNS) -> bool:
    return any(pattern.search(author) for pattern in patterns)


def is_excluded_author(author: str, exclude_list: Iterable[str]) -> bool:
    author_lower = author.lower()
    return any(excluded.lower() == author_lower for excluded in exclude_list)


def should_exclude_author(
    author: str,
    exclude_list: Iterable[str] = (),
    bot_patterns: Sequence[Pattern[str]] = DEFAULT_BOT_PATTERNS,
    exclude_bots: bool = False,
) -> bool:
    """Explicit exclusions always apply; bot patterns only when ``exclude_bots``."""
    if is_excluded_author(author, exclude_list):
        return True
    return exclude_bots and is_bot(author, bot_patterns)


def merge_exclude_authors(custom: Iterable[str] = (), include_defaults: bool = True) -> list[str]:
    """Merge the default bot list with custom exclusions, lowercased and deduplicated."""
    merged: list[str] = []
    base = DEFAULT_EXCLUDE_AUTHORS if include_defaults else ()
    for author in (*base, *custom):
        lowered = author.lower()
        if lowered not in merged:
            merged.append(lowered)
    return merged


@dataclass
class AuthorStats:
    author: str
    count: int = 0
    types: dict[str, int] = field(default_factory=dict)
    is_bot: bool = False


def build_author_index(
    entries: Iterable[Entry],
    bot_patterns: Sequence[Pattern[str]] = DEFAULT_BOT_PATTERNS,
) -> list[AuthorStats]:
    """Per-author activity counts, most active first."""
    index: dict[str, AuthorStats] = {}
    for entry in entries:
        stats = index.get(entry.author)
        if stats is None:
            stats = AuthorStats(author=entry.author, is_bot=is_bot(entry.author, bot_patterns))
            index[entry.author] = stats
        stats.count += 1
        stats.types[entry.type] = stats.types.get(entry.type, 0) + 1
    return sorted(index.values(), key=lambda s: s.count, reverse=True)
