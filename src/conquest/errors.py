"""Engine error taxonomy.

ValidationError   activity too short or empty; a normal zero-effect outcome
ConflictError     lost an optimistic race on a single cell; retried
ProcessingError   terminal failure of a processing run
ConfigurationError missing or malformed gameplay config; fatal for the run
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngineError):
    """Activity does not qualify for territory or XP."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConflictError(EngineError):
    """A concurrent write won the race for a cell."""

    def __init__(self, cell_id: str, attempts: int = 1) -> None:
        super().__init__(f"Write conflict on cell {cell_id} after {attempts} attempt(s)")
        self.cell_id = cell_id
        self.attempts = attempts


class ProcessingError(EngineError):
    """Unrecoverable failure while processing an activity."""


class ConfigurationError(EngineError):
    """Gameplay config is missing or malformed."""


class InvalidTransitionError(EngineError, ValueError):
    """Processing status change not allowed by the state machine."""
