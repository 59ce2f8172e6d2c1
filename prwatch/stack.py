"""
Graphite stack support.

Reads the current stack from the Graphite CLI (``gt log --stack``) and tags
entries of PRs in that stack with their stack id, position, size and parent
PR. Also provides the ``stack`` and ``stack-position`` query filters.

Install:  npm install -g @withgraphite/graphite-cli
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from .models import Entry, StackMetadata
from .query import CustomFilter

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x9b[0-9;?]*[A-Za-z]")
_BRANCH_RE = re.compile(r"^[◉◯]\s+(.+?)(?:\s+\(current\))?\s*$")
_PR_RE = re.compile(r"PR\s+#(\d+)")


@dataclass
class StackBranch:
    name: str
    pr_number: int | None = None


@dataclass
class GraphiteStack:
    """A stack of branches ordered from trunk upward."""

    name: str
    branches: list[StackBranch] = field(default_factory=list)


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def parse_graphite_log(output: str) -> list[GraphiteStack]:
    """
    Parse ``gt log --stack`` output.

    Graphite prints the top of the stack first, so branches are reversed to
    run from the bottom (closest to trunk) up. Branches without a PR are
    dropped; the stack is named after its bottom branch.
    """
    branches: list[StackBranch] = []
    current: StackBranch | None = None

    for line in strip_ansi(output).splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue

        branch_match = _BRANCH_RE.match(trimmed)
        if branch_match:
            current = StackBranch(name=branch_match.group(1).strip())
            branches.append(current)
            continue

        pr_match = _PR_RE.search(trimmed)
        if pr_match and current is not None:
            current.pr_number = int(pr_match.group(1))

    with_prs = [branch for branch in branches if branch.pr_number]
    if not with_prs:
        return []

    ordered = list(reversed(with_prs))
    return [GraphiteStack(name=ordered[0].name, branches=ordered)]


def load_graphite_stacks(cwd: Path | None = None, timeout: int = 30) -> list[GraphiteStack] | None:
    """Stacks from the local Graphite CLI, or None if it is unavailable."""
    if shutil.which("gt") is None:
        logger.debug("Graphite CLI not found, skipping stack metadata")
        return None

    try:
        result = subprocess.run(
            ["gt", "log", "--stack", "--no-interactive"],
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        logger.warning("Graphite: could not run gt log (%s), skipping stack metadata", exc)
        return None

    if result.returncode != 0:
        logger.warning(
            "Graphite: gt log exited %d: %s",
            result.returncode,
            result.stderr[:500],
        )
        return None

    stacks = parse_graphite_log(result.stdout)
    return stacks or None


class GraphiteEnricher:
    """Sync enricher that attaches stack metadata to entries of stacked PRs."""

    name = "graphite"

    def __init__(self, stacks: list[GraphiteStack] | None, repo: str | None = None):
        # Local stacks describe one repository; None tags every repository
        self.repo = repo
        self._positions: dict[int, StackMetadata] = {}
        for stack in stacks or []:
            size = len(stack.branches)
            for index, branch in enumerate(stack.branches):
                if branch.pr_number is None or branch.pr_number in self._positions:
                    continue
                parent = stack.branches[index - 1].pr_number if index > 0 else None
                self._positions[branch.pr_number] = StackMetadata(
                    stack_id=stack.name,
                    stack_position=index + 1,
                    stack_size=size,
                    parent_pr=parent,
                )

    @classmethod
    def from_cli(cls, cwd: Path | None = None, repo: str | None = None) -> GraphiteEnricher:
        return cls(load_graphite_stacks(cwd), repo=repo)

    def __call__(self, entry: Entry) -> Entry:
        if self.repo is not None and entry.repo != self.repo:
            return entry
        metadata = self._positions.get(entry.pr)
        if metadata is None:
            return entry
        return replace(entry, graphite=replace(metadata))

    def query_filters(self) -> Mapping[str, CustomFilter]:
        return {
            "stack": _match_stack,
            "stack-position": _match_stack_position,
        }


def _match_stack(entry: Entry, value: str) -> bool:
    return entry.graphite is not None and entry.graphite.stack_id == value


def _match_stack_position(entry: Entry, value: str) -> bool:
    if entry.graphite is None:
        return False
    try:
        return entry.graphite.stack_position == int(value)
    except ValueError:
        return False
