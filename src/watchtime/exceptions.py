"""Custom exception hierarchy for the watchtime package."""

from __future__ import annotations


class WatchTimeError(Exception):
    """Base class for all watchtime specific errors."""


class PersistenceError(WatchTimeError):
    """Raised when the key-value store fails to write a batch."""


class ConsistencyError(WatchTimeError):
    """Raised when an internal arithmetic check or a post-write verification fails."""
