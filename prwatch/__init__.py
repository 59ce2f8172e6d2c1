"""
Prwatch - A local, queryable mirror of GitHub pull-request activity.

A CLI tool that:
1. Syncs PR comments, reviews and commits into a local SQLite mirror
2. Keeps the mirror correct under incremental, per-scope refresh
3. Filters and aggregates activity offline (queries, worklists)
4. Annotates stale comments and supports per-PR freeze cutoffs

Usage:
    prwatch sync            # Sync open PRs for configured repos
    prwatch query           # Filter cached activity
    prwatch worklist        # Per-PR activity summary
    prwatch freeze          # Hide new activity on a PR
    prwatch check           # Annotate comments with later file activity
    prwatch status          # Show sync state
"""

__version__ = "0.1.0"
__author__ = "Prwatch"
