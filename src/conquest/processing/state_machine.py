"""Activity processing status transitions.

uploading -> pending -> processing -> completed | error
completed and error may go back to pending for reprocessing.
"""

from __future__ import annotations

from conquest.errors import InvalidTransitionError

UPLOADING = "uploading"
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

TERMINAL_STATES = frozenset({COMPLETED, ERROR})

VALID_TRANSITIONS: dict[str, list[str]] = {
    UPLOADING: [PENDING],
    PENDING: [PROCESSING],
    PROCESSING: [COMPLETED, ERROR],
    COMPLETED: [PENDING],
    ERROR: [PENDING],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises InvalidTransitionError (a ValueError) if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransitionError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def can_transition(current_status: str, target_status: str) -> bool:
    return target_status in VALID_TRANSITIONS.get(current_status, [])
