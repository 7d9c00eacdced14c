"""Unit tests for the activity processing state machine."""

from __future__ import annotations

import pytest

from conquest.errors import InvalidTransitionError
from conquest.processing.state_machine import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    can_transition,
    validate_transition,
)


class TestProcessingStateMachine:
    """Test activity status transitions."""

    def test_valid_transitions_structure(self):
        """All states have defined transitions."""
        assert set(VALID_TRANSITIONS.keys()) == {"uploading", "pending", "processing", "completed", "error"}

    def test_happy_path(self):
        validate_transition("uploading", "pending")
        validate_transition("pending", "processing")
        validate_transition("processing", "completed")

    def test_processing_can_fail(self):
        validate_transition("processing", "error")

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES))
    def test_terminal_states_reopen_for_reprocessing(self, terminal):
        """completed and error only go back to pending."""
        assert VALID_TRANSITIONS[terminal] == ["pending"]

    def test_cannot_skip_processing(self):
        with pytest.raises(InvalidTransitionError, match="Invalid transition"):
            validate_transition("pending", "completed")

    def test_cannot_process_while_uploading(self):
        """Activities still uploading are never claimed."""
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition("uploading", "processing")

    def test_cannot_reclaim_processing(self):
        assert not can_transition("processing", "processing")

    def test_unknown_state(self):
        assert not can_transition("archived", "pending")
