"""
Exception hierarchy for the sync engine.

Transport and payload failures are caught per group and surfaced as an
`error` string on that group's result; they never abort a whole batch.
"""

from __future__ import annotations


class CardSyncError(Exception):
    """Base class for all sync engine errors."""


class UpstreamError(CardSyncError):
    """An upstream feed answered with something we could not use."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailableError(UpstreamError):
    """Every URL variant (CSV and JSON fallback) failed."""


class MalformedPayloadError(UpstreamError):
    """The body could not be parsed; `diagnostic` classifies what we got."""

    def __init__(self, message: str, diagnostic: str, sample: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic
        self.sample = sample


class PersistenceError(CardSyncError):
    """A chunk could not be written after exhausting its retries."""


class JobNotFoundError(CardSyncError):
    pass


class JobFinishedError(CardSyncError):
    """Finished jobs are immutable."""


class MatchingError(CardSyncError):
    """The game cannot be matched (unknown, or not mapped to a category)."""


class GameNotFoundError(CardSyncError):
    """The pricing feed does not list the requested game."""
