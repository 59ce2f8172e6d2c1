"""
Prwatch CLI - Local, queryable mirror of GitHub pull request activity.

Commands:
    init      - Initialize Prwatch in current repository
    sync      - Pull PR activity into the local mirror
    query     - Filter mirrored activity
    worklist  - Per-PR rollup of activity
    authors   - Who is active, with bot detection
    freeze    - Hide new activity on a PR until unfrozen
    unfreeze  - Show all activity on a PR again
    frozen    - List frozen PRs
    check     - Annotate comments with later file activity
    status    - Mirror and sync state
"""

from __future__ import annotations

import functools
import json
import logging
import os
from typing import Any, Callable

import click
from dotenv import load_dotenv

from .config import get_repo_root

# Load .env file from current directory, then repo root
load_dotenv()
load_dotenv(get_repo_root() / ".env")

from . import __version__
from .authors import DEFAULT_BOT_PATTERNS, build_author_index, compile_bot_patterns, merge_exclude_authors
from .check import check_repo
from .config import PrwatchConfig, detect_repo, ensure_prwatch_dir
from .errors import PrwatchError
from .freeze import count_hidden_entries, freeze_pr, list_frozen, unfreeze_pr
from .github import GitHubAPIError, GitHubClient
from .models import DISPLAY_STATES, ENTRY_TYPES, SYNC_SCOPES
from .query import QueryFilters
from .stack import GraphiteEnricher
from .store import Store
from .sync import parse_repo, sync_repos
from .timestamps import parse_since
from .worklist import build_worklist, sort_worklist, worklist_to_dicts


SAMPLE_CONFIG = """\
# Prwatch Configuration

# Repositories to mirror
repos:
  - owner/repo

# Mirror location (default: .prwatch/prwatch.db)
# database: ~/.prwatch/prwatch.db

# Sync settings
sync:
  scopes: [open]      # open, closed (closed + merged)
  page_size: 50       # PRs per GraphQL page (max 100)
  reactions: true     # Fetch thumbs-up reactions on comments
  stack_plugin: true  # Tag stacked PRs using the Graphite CLI (gt)

# Default query filters
filters:
  exclude_bots: false
  exclude_authors: []
  bot_patterns: []    # Extra regexes, e.g. "^ci-"
"""


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn domain and API errors into a message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (PrwatchError, GitHubAPIError) as e:
            raise click.ClickException(str(e)) from e

    return wrapper


def _load() -> tuple[PrwatchConfig, Store]:
    config = PrwatchConfig.load(get_repo_root())
    return config, Store(config.get_db_path())


def _github_client() -> GitHubClient:
    if not os.environ.get("GITHUB_TOKEN"):
        raise click.ClickException("GITHUB_TOKEN is not set. Add it to your environment or .env")
    return GitHubClient()


# Stack predicates work off stored metadata, so no stack needs loading
QUERY_PLUGINS = [GraphiteEnricher(None)]


def filter_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by query, worklist and authors."""
    options = [
        click.option("--repo", help="Repository substring"),
        click.option("--exact-repo", help="Exact repository (owner/repo)"),
        click.option("--pr", "prs", multiple=True, type=int, help="PR number (repeatable)"),
        click.option("--author", help="Entry author"),
        click.option("--type", "types", multiple=True, type=click.Choice(ENTRY_TYPES), help="Entry type (repeatable)"),
        click.option("--state", "states", multiple=True, type=click.Choice(DISPLAY_STATES), help="PR state (repeatable)"),
        click.option("--label", help="PR label substring"),
        click.option("--since", help="Only entries since (24h, 7d, 2w, 1m or ISO date)"),
        click.option("--exclude-author", "exclude_authors", multiple=True, help="Hide an author (repeatable)"),
        click.option("--exclude-bots/--include-bots", default=None, help="Hide bot activity"),
        click.option("--orphaned", is_flag=True, help="Unresolved review comments on closed/merged PRs"),
        click.option("--include-stale", is_flag=True, help="Show unresolved comments on closed/merged PRs"),
        click.option("--include-frozen", is_flag=True, help="Show activity after a PR's freeze"),
        click.option("--stack", help="Graphite stack id"),
        click.option("--stack-position", type=int, help="Position within the Graphite stack"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_filters(config: PrwatchConfig, opts: dict[str, Any]) -> QueryFilters:
    exclude_bots = opts["exclude_bots"]
    if exclude_bots is None:
        exclude_bots = config.filters.exclude_bots

    exclude_authors = list(config.filters.exclude_authors) + list(opts["exclude_authors"])
    if exclude_bots:
        exclude_authors = merge_exclude_authors(exclude_authors)

    custom: dict[str, str] = {}
    if opts.get("stack"):
        custom["stack"] = opts["stack"]
    if opts.get("stack_position") is not None:
        custom["stack-position"] = str(opts["stack_position"])

    filters = QueryFilters(
        repo=opts.get("repo"),
        exact_repo=opts.get("exact_repo"),
        pr=list(opts["prs"]) or None,
        author=opts.get("author"),
        type=list(opts["types"]) or None,
        states=list(opts["states"]) or None,
        label=opts.get("label"),
        since=parse_since(opts["since"]) if opts.get("since") else None,
        exclude_authors=exclude_authors,
        exclude_bots=bool(exclude_bots),
        orphaned=opts["orphaned"],
        exclude_stale=not opts["include_stale"],
        include_frozen=opts["include_frozen"],
        custom=custom,
    )
    if config.filters.bot_patterns:
        filters.bot_patterns = DEFAULT_BOT_PATTERNS + compile_bot_patterns(config.filters.bot_patterns)
    return filters


@click.group()
@click.version_option(version=__version__)
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool):
    """Prwatch - Local, queryable mirror of GitHub pull request activity."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize Prwatch in the current repository."""
    repo_root = get_repo_root()
    click.echo(f"Initializing Prwatch in: {repo_root}")

    prwatch_dir = ensure_prwatch_dir(repo_root)
    click.echo(f"  Created: {prwatch_dir}")

    config_path = repo_root / "prwatch.yml"
    if not config_path.exists() or force:
        sample = SAMPLE_CONFIG
        detected = detect_repo(repo_root)
        if detected:
            sample = sample.replace("owner/repo", detected)
        config_path.write_text(sample)
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    store = Store(PrwatchConfig.load(repo_root).get_db_path())
    click.echo(f"  Database: {store.db_path}")

    gitignore_path = repo_root / ".gitignore"
    gitignore_entry = "\n# Prwatch\n.prwatch/\n.env\n"
    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if ".prwatch" not in content:
            with open(gitignore_path, "a") as f:
                f.write(gitignore_entry)
            click.echo(f"  Updated: {gitignore_path}")
    else:
        gitignore_path.write_text(gitignore_entry)
        click.echo(f"  Created: {gitignore_path}")

    click.echo("\nPrwatch initialized! Next steps:")
    click.echo("  1. Edit prwatch.yml to list repositories")
    click.echo("  2. Set GITHUB_TOKEN environment variable")
    click.echo("  3. Run: prwatch sync")


@main.command()
@click.argument("repo", required=False)
@click.option("--open", "open_scope", is_flag=True, help="Sync open PRs")
@click.option("--closed", "closed_scope", is_flag=True, help="Sync closed and merged PRs")
@click.option("--full", is_flag=True, help="Full sync (ignore previous sync state)")
@click.option("--since", default=None, help="Only sync PRs updated since (24h, 7d, 2w, 1m or ISO date)")
@click.option("--clear", is_flag=True, help="Delete mirrored data for the repo before syncing")
@click.option("--dry-run", is_flag=True, help="Show what would be synced without fetching")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def sync(
    repo: str | None,
    open_scope: bool,
    closed_scope: bool,
    full: bool,
    since: str | None,
    clear: bool,
    dry_run: bool,
    as_json: bool,
):
    """Pull PR activity into the local mirror.

    The first sync of a scope walks every PR; later syncs only fetch PRs
    updated since the previous one.

    Examples:

        prwatch sync                     # Configured repos, configured scopes
        prwatch sync owner/repo --closed # Closed and merged PRs
        prwatch sync --since 7d          # Only the last week
        prwatch sync --full              # Ignore previous sync state
    """
    config, store = _load()

    if repo:
        parse_repo(repo)
        repos = [repo]
    else:
        repos = list(config.repos)
        if not repos:
            detected = detect_repo(config.repo_root)
            if detected:
                repos = [detected]
    if not repos:
        raise click.ClickException("No repositories configured. Add repos to prwatch.yml or pass owner/repo")

    scopes = [s for s, on in (("open", open_scope), ("closed", closed_scope)) if on]
    if not scopes:
        scopes = list(config.sync.scopes)
    since_dt = parse_since(since) if since else None

    if dry_run:
        plan = []
        for name in repos:
            for scope in scopes:
                meta = store.get_sync_meta(name, scope)
                mode = "cursor" if since_dt is None and (meta is None or full or clear) else "window"
                plan.append({
                    "repo": name,
                    "scope": scope,
                    "mode": mode,
                    "last_sync": meta.last_sync if meta else None,
                    "clear": clear,
                })
        if as_json:
            click.echo(json.dumps(plan, indent=2))
        else:
            for item in plan:
                last = item["last_sync"] or "never"
                click.echo(f"Would sync {item['repo']} ({item['scope']}) via {item['mode']}, last sync: {last}")
        return

    client = _github_client()

    if clear:
        for name in repos:
            store.clear_repo(name)
            if not as_json:
                click.echo(f"Cleared {name}")

    enrichers = []
    if config.sync.stack_plugin:
        enrichers.append(GraphiteEnricher.from_cli(config.repo_root, repo=detect_repo(config.repo_root)))

    report = sync_repos(
        client,
        store,
        repos,
        scopes=scopes,
        full=full,
        since=since_dt,
        enrichers=enrichers,
        page_size=config.sync.page_size,
        fetch_reactions=config.sync.reactions,
    )

    if as_json:
        click.echo(json.dumps({
            "results": [
                {
                    "repo": r.repo,
                    "scope": r.scope,
                    "mode": r.mode,
                    "entries_added": r.entries_added,
                    "prs_processed": r.prs_processed,
                    "prs_reconciled": r.prs_reconciled,
                    "cursor": r.cursor,
                }
                for r in report.results
            ],
            "failures": report.failures,
        }, indent=2))
        return

    for r in report.results:
        line = f"{r.repo} ({r.scope}, {r.mode}): {r.prs_processed} PRs, {r.entries_added} new entries"
        if r.prs_reconciled:
            line += f", {r.prs_reconciled} closed/merged reconciled"
        click.echo(line)
    for name, error in report.failures.items():
        click.echo(f"{name}: failed - {error}", err=True)


@main.command()
@filter_options
@click.option("--id", "entry_id", help="Entry id")
@click.option("--limit", type=int, default=None, help="Maximum entries")
@click.option("--offset", type=int, default=0, help="Skip first N entries")
@click.option("--count", "count_only", is_flag=True, help="Only print the number of matches")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON lines")
@handle_errors
def query(entry_id: str | None, limit: int | None, offset: int, count_only: bool, as_json: bool, **opts: Any):
    """Filter mirrored activity, newest first."""
    config, store = _load()
    filters = _build_filters(config, opts)
    filters.id = entry_id

    if count_only:
        click.echo(str(store.count_entries(filters, plugins=QUERY_PLUGINS)))
        return

    entries = store.query_entries(filters, limit=limit, offset=offset, plugins=QUERY_PLUGINS)
    for entry in entries:
        if as_json:
            click.echo(json.dumps(entry.to_dict()))
            continue
        location = f" {entry.file}:{entry.line}" if entry.file else ""
        kind = entry.subtype or entry.type
        summary = (entry.body or "").strip().splitlines()[0:1]
        text = summary[0][:80] if summary else ""
        click.echo(
            f"{entry.created_at}  {entry.repo}#{entry.pr} [{entry.pr_state}] "
            f"{kind} by {entry.author}{location}  {text}"
        )


@main.command()
@filter_options
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def worklist(as_json: bool, **opts: Any):
    """Per-PR rollup of activity, stacks first."""
    config, store = _load()
    filters = _build_filters(config, opts)
    entries = store.query_entries(filters, plugins=QUERY_PLUGINS)
    items = sort_worklist(build_worklist(entries))

    if as_json:
        click.echo(json.dumps(worklist_to_dicts(items), indent=2))
        return

    if not items:
        click.echo("No activity.")
        return

    for item in items:
        counts = item.counts
        stack = ""
        if item.graphite and item.graphite.stack_id:
            stack = f" [stack {item.graphite.stack_id} {item.graphite.stack_position}/{item.graphite.stack_size}]"
        click.echo(f"{item.repo}#{item.pr} [{item.pr_state}] {item.pr_title}{stack}")
        click.echo(
            f"  {counts.comments} comments, {counts.reviews} reviews, {counts.commits} commits"
            f" | approved {item.review_states.approved},"
            f" changes requested {item.review_states.changes_requested}"
        )
        click.echo(
            f"  last: {item.latest_activity_type} by {item.latest_activity_author} at {item.last_activity_at}"
        )


@main.command()
@filter_options
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def authors(as_json: bool, **opts: Any):
    """Per-author activity counts over matching entries."""
    config, store = _load()
    filters = _build_filters(config, opts)
    patterns = filters.bot_patterns if filters.bot_patterns is not None else DEFAULT_BOT_PATTERNS
    index = build_author_index(store.query_entries(filters, plugins=QUERY_PLUGINS), patterns)

    if as_json:
        click.echo(json.dumps([
            {"author": s.author, "count": s.count, "types": s.types, "is_bot": s.is_bot}
            for s in index
        ], indent=2))
        return

    for stats in index:
        types = ", ".join(f"{t}: {n}" for t, n in sorted(stats.types.items()))
        marker = " (bot)" if stats.is_bot else ""
        click.echo(f"{stats.author}{marker}: {stats.count} ({types})")


@main.command()
@click.argument("repo")
@click.argument("pr", type=int)
@handle_errors
def freeze(repo: str, pr: int):
    """Hide activity on a PR created after now."""
    _, store = _load()
    info = freeze_pr(store, repo, pr)
    click.echo(f"Froze {repo}#{pr} at {info.frozen_at}")


@main.command()
@click.argument("repo")
@click.argument("pr", type=int)
@handle_errors
def unfreeze(repo: str, pr: int):
    """Show all activity on a PR again."""
    _, store = _load()
    hidden = count_hidden_entries(store, repo, pr)
    unfreeze_pr(store, repo, pr)
    click.echo(f"Unfroze {repo}#{pr} ({hidden} entries now visible)")


@main.command()
@click.option("--repo", help="Only this repository")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def frozen(repo: str | None, as_json: bool):
    """List frozen PRs."""
    _, store = _load()
    items = list_frozen(store, repo)
    rows = [
        {
            "repo": info.repo,
            "pr": info.pr,
            "frozen_at": info.frozen_at,
            "hidden": count_hidden_entries(store, info.repo, info.pr),
        }
        for info in items
    ]
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No frozen PRs.")
        return
    for row in rows:
        click.echo(f"{row['repo']}#{row['pr']} frozen at {row['frozen_at']} ({row['hidden']} hidden)")


@main.command()
@click.argument("repo")
@click.option("--no-files", is_flag=True, help="Do not look up commit file lists")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def check(repo: str, no_files: bool, as_json: bool):
    """Annotate comments with commits pushed after them."""
    _, store = _load()
    parse_repo(repo)

    resolver = None
    if not no_files:
        client = _github_client()
        resolver = functools.partial(client.fetch_commit_files, repo)

    result = check_repo(store, repo, resolve_commit_files=resolver)
    if as_json:
        click.echo(json.dumps({
            "repo": result.repo,
            "comments_checked": result.comments_checked,
            "entries_updated": result.entries_updated,
        }, indent=2))
    else:
        click.echo(f"{repo}: checked {result.comments_checked} comments, updated {result.entries_updated}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def status(as_json: bool):
    """Show mirror location and sync state."""
    config, store = _load()
    everything = dict(exclude_stale=False, include_frozen=True)

    repos: dict[str, dict[str, Any]] = {}
    for name in sorted(set(store.get_repos()) | set(config.repos)):
        repos[name] = {
            "entries": store.count_entries(QueryFilters(exact_repo=name, **everything)),
            "frozen": len(list_frozen(store, name)),
            "scopes": {},
        }
    for meta in store.get_all_sync_meta():
        repo_status = repos.setdefault(meta.repo, {"entries": 0, "frozen": 0, "scopes": {}})
        repo_status["scopes"][meta.scope] = {"last_sync": meta.last_sync, "pr_count": meta.pr_count}

    data = {
        "database": str(store.db_path),
        "schema_version": store.schema_version,
        "repos": repos,
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Database: {data['database']} (schema v{data['schema_version']})")
    if not repos:
        click.echo("No repositories synced yet. Run: prwatch sync")
        return
    for name, info in repos.items():
        click.echo(f"\n{name}: {info['entries']} entries, {info['frozen']} frozen PRs")
        for scope in SYNC_SCOPES:
            scope_info = info["scopes"].get(scope)
            if scope_info:
                click.echo(f"  {scope}: last sync {scope_info['last_sync']}, {scope_info['pr_count']} PRs")
            else:
                click.echo(f"  {scope}: never synced")


if __name__ == "__main__":
    main()
