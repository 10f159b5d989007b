"""
Error taxonomy shared by every engine.

Each error carries a ``kind`` so the transport and the guardian error engine can
decide how to surface it:

- input:       bad operator input; state unchanged, user gets an actionable message
- transient:   per-image failure (download, OCR); the image is dropped, the session continues
- matching:    no OCR token of an image matched the roster; recorded, the session continues
- consistency: action not allowed in the current stage / gate state
- fatal:       storage or configuration failure; the session is torn down
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ScoreboardError(Exception):
    """Base class for all domain errors."""

    kind = "fatal"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    @property
    def user_message(self) -> str:
        return self.message


class InputError(ScoreboardError):
    """Invalid operator input for the current stage."""

    kind = "input"


class TransientError(ScoreboardError):
    """Recoverable failure scoped to a single image."""

    kind = "transient"


class MatchingError(ScoreboardError):
    """No nick of an image matched a roster member above the threshold."""

    kind = "matching"


class ConsistencyError(ScoreboardError):
    """Operation violates the session / gate state machine."""

    kind = "consistency"


class FatalError(ScoreboardError):
    """Unrecoverable failure; the current session must be cleaned up."""

    kind = "fatal"


class StorageError(FatalError):
    """Result Store I/O failure."""


class CorruptRecordError(FatalError):
    """A stored record could not be decoded."""


class ConfigurationError(FatalError):
    """Guild configuration missing or invalid."""


__all__ = [
    "ScoreboardError",
    "InputError",
    "TransientError",
    "MatchingError",
    "ConsistencyError",
    "FatalError",
    "StorageError",
    "CorruptRecordError",
    "ConfigurationError",
]
