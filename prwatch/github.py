"""
GitHub API client for Prwatch.

Fetches PR activity (reviews, comments, review threads, commits) through the
GraphQL API, plus comment reactions and commit file lists.
Uses GITHUB_TOKEN environment variable for authentication.

Supports:
- Cursor pagination ordered by last update (newest first)
- Batched reaction lookups
- Rate limit handling
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import requests

from .models import CommentReactions

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
MAX_RETRIES = 3
RETRY_DELAY = 1.0
REACTIONS_BATCH_SIZE = 100

PR_ACTIVITY_QUERY = """
query PRActivity($owner: String!, $repo: String!, $first: Int!, $after: String, $states: [PullRequestState!]) {
  repository(owner: $owner, name: $repo) {
    pullRequests(first: $first, after: $after, states: $states, orderBy: {field: UPDATED_AT, direction: DESC}) {
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        id
        number
        title
        state
        isDraft
        author { login }
        headRefName
        createdAt
        updatedAt
        url
        labels(first: 20) { nodes { name } }
        reviews(first: 50) {
          nodes { id author { login } body state createdAt updatedAt }
        }
        comments(first: 100) {
          nodes { id author { login } body createdAt updatedAt }
        }
        reviewThreads(first: 100) {
          nodes {
            id
            path
            line
            isResolved
            comments(first: 50) {
              nodes { id author { login } body createdAt updatedAt }
            }
          }
        }
        commits(last: 50) {
          nodes {
            commit {
              oid
              message
              author { name email }
              committedDate
            }
          }
        }
      }
    }
  }
}
"""

COMMENT_REACTIONS_QUERY = """
query CommentReactions($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on IssueComment {
      id
      reactions(content: THUMBS_UP, first: 100) { nodes { user { login } } }
    }
    ... on PullRequestReviewComment {
      id
      reactions(content: THUMBS_UP, first: 100) { nodes { user { login } } }
    }
  }
}
"""


@dataclass
class PRActivityPage:
    """One page of PR nodes as returned by the GraphQL API."""

    prs: list[dict[str, Any]] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


class GitHubAPIError(Exception):
    """Error from GitHub API."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded."""
    def __init__(self, reset_time: int | None = None):
        super().__init__("GitHub API rate limit exceeded", 403)
        self.reset_time = reset_time


class GitHubClient:
    """GitHub API client with retry and rate limit handling."""

    def __init__(self, token: str | None = None):
        self.token = token or os.environ.get("GITHUB_TOKEN")
        self.session = requests.Session()

        if self.token:
            self.session.headers["Authorization"] = f"bearer {self.token}"

        self.session.headers["Accept"] = "application/vnd.github+json"
        self.session.headers["User-Agent"] = "prwatch/0.1.0"

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an API request with retry and rate limit handling."""
        url = f"{GITHUB_API_BASE}{endpoint}"

        for attempt in range(MAX_RETRIES):
            try:
                response = self.session.request(method, url, params=params, **kwargs)
            except requests.RequestException as e:
                if attempt < MAX_RETRIES - 1:
                    logger.debug("Request to %s failed (%s), retrying", endpoint, e)
                    time.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                raise GitHubAPIError(f"Request failed: {e}") from e

            # Check rate limit
            if response.status_code in (403, 429):
                remaining = response.headers.get("X-RateLimit-Remaining")
                if remaining == "0" or response.status_code == 429:
                    reset_time = int(response.headers.get("X-RateLimit-Reset", 0))
                    raise RateLimitError(reset_time)

            if response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code} - {response.text}",
                    response.status_code,
                )

            return response

        raise GitHubAPIError("Max retries exceeded")

    def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a GraphQL query and return its ``data`` object."""
        response = self._request("POST", "/graphql", json={"query": query, "variables": variables})
        payload = response.json()

        errors = payload.get("errors")
        if errors:
            messages = ", ".join(str(error.get("message", error)) for error in errors)
            if any(error.get("type") == "RATE_LIMITED" for error in errors):
                raise RateLimitError()
            raise GitHubAPIError(f"GraphQL errors: {messages}")

        data = payload.get("data")
        if data is None:
            raise GitHubAPIError("No data returned from GitHub API")
        return data

    def fetch_pr_activity(
        self,
        owner: str,
        repo: str,
        first: int = 50,
        after: str | None = None,
        states: Sequence[str] = ("OPEN",),
    ) -> PRActivityPage:
        """
        Fetch one page of PRs with their activity, most recently updated first.

        Args:
            owner: Repository owner
            repo: Repository name
            first: Page size (max 100)
            after: Cursor from the previous page, or None for the first page
            states: GraphQL PR states (OPEN, CLOSED, MERGED)

        Returns:
            PRActivityPage with raw PR nodes and pagination info
        """
        data = self.graphql(
            PR_ACTIVITY_QUERY,
            {"owner": owner, "repo": repo, "first": first, "after": after, "states": list(states)},
        )
        repository = data.get("repository")
        if repository is None:
            raise GitHubAPIError(f"Repository {owner}/{repo} not found", 404)

        pull_requests = repository["pullRequests"]
        page_info = pull_requests.get("pageInfo") or {}
        return PRActivityPage(
            prs=list(pull_requests.get("nodes") or []),
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )

    def fetch_comment_reactions(self, comment_ids: Sequence[str]) -> dict[str, CommentReactions]:
        """Thumbs-up reactions for issue and review comments, keyed by comment id."""
        reactions: dict[str, CommentReactions] = {}
        ids = list(dict.fromkeys(comment_ids))
        for start in range(0, len(ids), REACTIONS_BATCH_SIZE):
            batch = ids[start:start + REACTIONS_BATCH_SIZE]
            data = self.graphql(COMMENT_REACTIONS_QUERY, {"ids": batch})
            for node in data.get("nodes") or []:
                if not node or "id" not in node:
                    continue
                users = [
                    reaction["user"]["login"]
                    for reaction in (node.get("reactions") or {}).get("nodes") or []
                    if reaction.get("user")
                ]
                reactions[node["id"]] = CommentReactions(thumbs_up_by=users)
        return reactions

    def fetch_commit_files(self, repo: str, sha: str) -> list[str] | None:
        """
        Files touched by a commit, or None when GitHub cannot tell us.

        Missing commits (force-pushed away) come back as None instead of raising.
        """
        try:
            response = self._request("GET", f"/repos/{repo}/commits/{sha}")
        except GitHubAPIError as e:
            if e.status_code in (404, 422):
                logger.debug("Commit %s not available in %s: %s", sha, repo, e)
                return None
            raise
        files = response.json().get("files") or []
        return [item["filename"] for item in files if item.get("filename")]

    def check_rate_limit(self) -> dict[str, Any]:
        """Check current rate limit status."""
        response = self._request("GET", "/rate_limit")
        return response.json()
