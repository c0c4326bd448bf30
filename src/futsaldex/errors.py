"""Error types raised and recorded by the support coach."""
from __future__ import annotations


class FutsalDexError(Exception):
    """Base class for service errors."""


class GenerationFailure(FutsalDexError):
    """The text-generation backend produced no usable answer.

    This is the only error that reaches the caller of a chat turn.
    """


class HistoryFetchError(FutsalDexError):
    """Prior session state could not be used (missing, foreign or unreadable)."""

    def __init__(self, message: str, *, reason: str = "error") -> None:
        super().__init__(message)
        self.reason = reason


class PersistenceError(FutsalDexError):
    """Saving a turn to the document store failed."""
