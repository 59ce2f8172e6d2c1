"""Exceptions raised by the prwatch core."""

from __future__ import annotations


class PrwatchError(Exception):
    """Base class for prwatch errors."""


class NotFoundError(PrwatchError):
    """A PR or entry is not present in the local mirror."""


class ValidationError(PrwatchError):
    """Malformed input: repository identifier, filters, durations, config."""
