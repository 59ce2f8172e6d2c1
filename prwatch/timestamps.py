"""
Timestamp helpers.

All timestamps are stored as ISO 8601 UTC strings with second precision
("2024-01-01T00:00:00Z"), the same shape GitHub returns, so that string
comparison in SQLite orders them correctly.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from .errors import ValidationError

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_RELATIVE_RE = re.compile(r"^(\d+)([hdwmy])$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as a UTC ISO string (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp (with or without "Z") into an aware UTC datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_since(since: str) -> datetime:
    """
    Parse a 'since' value into a datetime.

    Supports:
    - Relative hours/days/weeks: "24h", "7d", "2w"
    - Relative months/years: "3m", "1y"
    - ISO date or datetime: "2024-01-01", "2024-01-01T12:00:00Z"

    Returns:
        datetime in UTC

    Raises:
        ValidationError: if the value matches neither format
    """
    now = utc_now()

    match = _RELATIVE_RE.match(since.strip().lower())
    if match:
        value = int(match.group(1))
        unit = match.group(2)

        if unit == "h":
            return now - timedelta(hours=value)
        elif unit == "d":
            return now - timedelta(days=value)
        elif unit == "w":
            return now - timedelta(weeks=value)
        elif unit == "m":
            return now - timedelta(days=value * 30)
        return now - timedelta(days=value * 365)

    try:
        return parse_iso(since.strip())
    except ValueError:
        raise ValidationError(
            f"Invalid duration format: {since}. Use format like 24h, 7d, 2w, 1m or an ISO date"
        ) from None
