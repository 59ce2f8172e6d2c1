from __future__ import annotations

import pytest

from prwatch.models import Entry, PRMetadata
from prwatch.store import Store

REPO = "acme/widgets"


def _make_pr(number: int = 1, repo: str = REPO, state: str = "open", **kwargs) -> PRMetadata:
    kwargs.setdefault("title", f"PR {number}")
    kwargs.setdefault("author", "alice")
    kwargs.setdefault("branch", f"feature-{number}")
    kwargs.setdefault("updated_at", "2024-01-01T00:00:00Z")
    return PRMetadata(repo=repo, number=number, state=state, **kwargs)


def _make_entry(
    entry_id: str,
    pr: int = 1,
    repo: str = REPO,
    type: str = "comment",
    author: str = "bob",
    created_at: str = "2024-01-01T10:00:00Z",
    **kwargs,
) -> Entry:
    kwargs.setdefault("captured_at", "2024-01-02T00:00:00Z")
    return Entry(
        id=entry_id,
        repo=repo,
        pr=pr,
        type=type,
        author=author,
        created_at=created_at,
        **kwargs,
    )


@pytest.fixture
def store(tmp_path):
    return Store(db_path=tmp_path / "prwatch.db")


@pytest.fixture
def make_pr():
    return _make_pr


@pytest.fixture
def make_entry():
    return _make_entry
