from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from prwatch.errors import ValidationError
from prwatch.github import GitHubAPIError, GitHubClient, RateLimitError
from prwatch.timestamps import parse_since


def _response(status_code=200, payload=None, headers=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    return response


def test_parse_since_relative_days():
    result = parse_since("30d")
    now = datetime.now(timezone.utc)
    expected = now - timedelta(days=30)
    # Allow 1 second tolerance
    assert abs((result - expected).total_seconds()) < 1


def test_parse_since_relative_hours():
    result = parse_since("24h")
    expected = datetime.now(timezone.utc) - timedelta(hours=24)
    assert abs((result - expected).total_seconds()) < 1


def test_parse_since_iso_datetime():
    result = parse_since("2024-06-15T12:30:00Z")
    assert (result.year, result.month, result.day, result.hour) == (2024, 6, 15, 12)
    assert result.tzinfo is not None


def test_parse_since_invalid_raises():
    with pytest.raises(ValidationError):
        parse_since("yesterday")


def test_fetch_pr_activity_parses_page():
    client = GitHubClient(token="test-token")
    payload = {
        "data": {
            "repository": {
                "pullRequests": {
                    "pageInfo": {"hasNextPage": True, "endCursor": "Y3Vyc29y"},
                    "nodes": [{"number": 1}, {"number": 2}],
                }
            }
        }
    }

    with patch.object(client.session, "request", return_value=_response(payload=payload)) as request:
        page = client.fetch_pr_activity("acme", "widgets", first=2, states=("CLOSED", "MERGED"))

    assert [pr["number"] for pr in page.prs] == [1, 2]
    assert page.has_next_page is True
    assert page.end_cursor == "Y3Vyc29y"
    variables = request.call_args.kwargs["json"]["variables"]
    assert variables["states"] == ["CLOSED", "MERGED"]
    assert variables["after"] is None


def test_missing_repository_is_an_error():
    client = GitHubClient(token="test-token")
    with patch.object(client.session, "request", return_value=_response(payload={"data": {"repository": None}})):
        with pytest.raises(GitHubAPIError) as exc_info:
            client.fetch_pr_activity("acme", "nope")
    assert exc_info.value.status_code == 404


def test_graphql_errors():
    client = GitHubClient(token="test-token")
    failing = _response(payload={"errors": [{"message": "Something broke"}]})
    with patch.object(client.session, "request", return_value=failing):
        with pytest.raises(GitHubAPIError, match="Something broke"):
            client.graphql("query { viewer { login } }", {})

    limited = _response(payload={"errors": [{"type": "RATE_LIMITED", "message": "slow down"}]})
    with patch.object(client.session, "request", return_value=limited):
        with pytest.raises(RateLimitError):
            client.graphql("query { viewer { login } }", {})


def test_rate_limit_response():
    client = GitHubClient(token="test-token")
    response = _response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"})
    with patch.object(client.session, "request", return_value=response):
        with pytest.raises(RateLimitError) as exc_info:
            client.check_rate_limit()
    assert exc_info.value.reset_time == 1700000000


def test_request_retries_network_errors():
    client = GitHubClient(token="test-token")
    ok = _response(payload={"resources": {}})
    side_effect = [requests.ConnectionError("reset"), ok]
    with patch.object(client.session, "request", side_effect=side_effect) as request, \
            patch("prwatch.github.time.sleep") as sleep:
        assert client.check_rate_limit() == {"resources": {}}
    assert request.call_count == 2
    sleep.assert_called_once()


def test_fetch_comment_reactions_batches_ids():
    client = GitHubClient(token="test-token")
    ids = [f"IC_{i}" for i in range(150)]

    def fake_graphql(query, variables):
        return {
            "nodes": [
                {"id": node_id, "reactions": {"nodes": [{"user": {"login": "carol"}}]}}
                if node_id == "IC_0" else None
                for node_id in variables["ids"]
            ]
        }

    with patch.object(client, "graphql", side_effect=fake_graphql) as graphql:
        reactions = client.fetch_comment_reactions(ids)

    assert graphql.call_count == 2
    assert reactions["IC_0"].thumbs_up_by == ["carol"]
    assert "IC_1" not in reactions


def test_fetch_commit_files():
    client = GitHubClient(token="test-token")
    payload = {"files": [{"filename": "src/app.py"}, {"filename": "README.md"}]}
    with patch.object(client.session, "request", return_value=_response(payload=payload)):
        assert client.fetch_commit_files("acme/widgets", "abc") == ["src/app.py", "README.md"]

    with patch.object(client.session, "request", return_value=_response(404, text="Not Found")):
        assert client.fetch_commit_files("acme/widgets", "gone") is None

    with patch.object(client.session, "request", return_value=_response(500, text="boom")):
        with pytest.raises(GitHubAPIError):
            client.fetch_commit_files("acme/widgets", "abc")
