"""
Configuration management for Prwatch.

Loads prwatch.yml from the repository root:
- repos: repositories to mirror ("owner/repo")
- database: optional path to the mirror file
- sync: default scopes, page size, reactions and stack plugin toggles
- filters: default author/bot exclusion for queries
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ValidationError
from .models import SYNC_SCOPES

CONFIG_FILENAME = "prwatch.yml"
DB_FILENAME = "prwatch.db"

REPO_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


@dataclass
class SyncConfig:
    """Default sync settings."""

    scopes: list[str] = field(default_factory=lambda: ["open"])
    page_size: int = 50
    reactions: bool = True
    stack_plugin: bool = True


@dataclass
class FiltersConfig:
    """Default query filters."""

    exclude_bots: bool = False
    exclude_authors: list[str] = field(default_factory=list)
    bot_patterns: list[str] = field(default_factory=list)


@dataclass
class PrwatchConfig:
    """Complete Prwatch configuration."""

    repos: list[str] = field(default_factory=list)
    database: str | None = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    filters: FiltersConfig = field(default_factory=FiltersConfig)
    repo_root: Path | None = None

    def get_db_path(self) -> Path:
        """Configured database path, or .prwatch/prwatch.db under the repo root."""
        if self.database:
            path = Path(self.database).expanduser()
            if not path.is_absolute():
                path = (self.repo_root or get_repo_root()) / path
            return path
        return get_prwatch_dir(self.repo_root) / DB_FILENAME

    @classmethod
    def load(cls, repo_root: Path) -> "PrwatchConfig":
        """Load configuration from repo root directory."""
        config = cls(repo_root=repo_root.resolve())

        config_path = repo_root / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValidationError(f"Invalid {CONFIG_FILENAME}: {e}") from e
            if not isinstance(data, dict):
                raise ValidationError(f"Invalid {CONFIG_FILENAME}: expected a mapping")
            config = cls._parse_main_config(data, repo_root=repo_root.resolve())

        return config

    @staticmethod
    def _parse_repos(raw: Any) -> list[str]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ValidationError("repos must be a list of owner/repo names")
        repos: list[str] = []
        for name in raw:
            if not isinstance(name, str) or not REPO_NAME_RE.match(name):
                raise ValidationError(f"Invalid repo format: {name}. Expected owner/repo")
            repos.append(name)
        return repos

    @classmethod
    def _parse_main_config(cls, data: dict[str, Any], repo_root: Path) -> "PrwatchConfig":
        config = cls(repo_root=repo_root)
        config.repos = cls._parse_repos(data.get("repos"))
        config.database = data.get("database")

        sync_data = data.get("sync") or {}
        scopes = sync_data.get("scopes", ["open"])
        if isinstance(scopes, str):
            scopes = [scopes]
        for scope in scopes:
            if scope not in SYNC_SCOPES:
                raise ValidationError(
                    f"Invalid sync scope: {scope}. Must be one of: {', '.join(SYNC_SCOPES)}"
                )
        page_size = sync_data.get("page_size", 50)
        if not isinstance(page_size, int) or not 1 <= page_size <= 100:
            raise ValidationError("sync.page_size must be an integer between 1 and 100")
        config.sync = SyncConfig(
            scopes=list(scopes),
            page_size=page_size,
            reactions=bool(sync_data.get("reactions", True)),
            stack_plugin=bool(sync_data.get("stack_plugin", True)),
        )

        filters_data = data.get("filters") or {}
        config.filters = FiltersConfig(
            exclude_bots=bool(filters_data.get("exclude_bots", False)),
            exclude_authors=[str(a) for a in filters_data.get("exclude_authors") or []],
            bot_patterns=[str(p) for p in filters_data.get("bot_patterns") or []],
        )

        return config


def get_repo_root() -> Path:
    """Find the repository root (directory containing .git)."""

    current = Path.cwd()
    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent
    return Path.cwd()


def get_prwatch_dir(repo_root: Path | None = None) -> Path:
    """Get the .prwatch directory path."""

    if repo_root is None:
        repo_root = get_repo_root()
    return repo_root / ".prwatch"


def ensure_prwatch_dir(repo_root: Path | None = None) -> Path:
    """Ensure .prwatch directory exists and return its path."""

    prwatch_dir = get_prwatch_dir(repo_root)
    prwatch_dir.mkdir(parents=True, exist_ok=True)
    return prwatch_dir


_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")


def detect_repo(repo_root: Path | None = None) -> str | None:
    """Detect "owner/repo" from the git origin remote, if it points at GitHub."""
    if repo_root is None:
        repo_root = get_repo_root()

    try:
        result = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            cwd=repo_root,
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError):
        # Not a git repo, no origin, or git not available
        return None

    match = _GITHUB_REMOTE_RE.search(result.stdout.strip())
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"
