"""
PR freeze overlay.

Freezing records a cutoff on the PR. Sync keeps ingesting activity, but the
default query hides entries created after the cutoff until the PR is
unfrozen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import NotFoundError
from .store import Store
from .timestamps import now_iso

logger = logging.getLogger(__name__)


@dataclass
class FreezeInfo:
    repo: str
    pr: int
    frozen_at: str | None


def freeze_pr(store: Store, repo: str, pr: int) -> FreezeInfo:
    """Stamp the PR's freeze cutoff with the current time."""
    frozen_at = now_iso()
    store.set_frozen_at(repo, pr, frozen_at)
    logger.debug("Froze %s#%s at %s", repo, pr, frozen_at)
    return FreezeInfo(repo=repo, pr=pr, frozen_at=frozen_at)


def unfreeze_pr(store: Store, repo: str, pr: int) -> FreezeInfo:
    store.set_frozen_at(repo, pr, None)
    logger.debug("Unfroze %s#%s", repo, pr)
    return FreezeInfo(repo=repo, pr=pr, frozen_at=None)


def get_freeze_info(store: Store, repo: str, pr: int) -> FreezeInfo | None:
    record = store.get_pr(repo, pr)
    if record is None:
        return None
    return FreezeInfo(repo=record.repo, pr=record.number, frozen_at=record.frozen_at)


def is_frozen(store: Store, repo: str, pr: int) -> bool:
    info = get_freeze_info(store, repo, pr)
    return info is not None and info.frozen_at is not None


def list_frozen(store: Store, repo: str | None = None) -> list[FreezeInfo]:
    """Frozen PRs, most recently frozen first."""
    return [
        FreezeInfo(repo=record.repo, pr=record.number, frozen_at=record.frozen_at)
        for record in store.get_frozen_prs(repo)
    ]


def count_hidden_entries(store: Store, repo: str, pr: int) -> int:
    """How many stored entries the freeze currently hides."""
    info = get_freeze_info(store, repo, pr)
    if info is None:
        raise NotFoundError(f"PR {repo}#{pr} not found")
    if info.frozen_at is None:
        return 0
    return store.count_entries_after(repo, pr, info.frozen_at)
