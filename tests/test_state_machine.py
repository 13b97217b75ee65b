"""Unit tests for run phase transition guardrails."""

import pytest

from statuscheck.common.state_machine import is_terminal, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("LOOKUP", "PROCESSING")
    validate_transition("PROCESSING", "AGGREGATING")
    validate_transition("AGGREGATING", "COMPLETED")


def test_invalid_transition():
    """Skipping a phase must raise to protect orchestration correctness."""

    with pytest.raises(ValueError):
        validate_transition("LOOKUP", "COMPLETED")


def test_every_live_phase_can_fail():
    for phase in ("LOOKUP", "PROCESSING", "AGGREGATING"):
        validate_transition(phase, "FAILED")


def test_terminal_phases_have_no_exit():
    """A finished run can never be reopened."""

    for phase in ("COMPLETED", "FAILED"):
        assert is_terminal(phase)
        with pytest.raises(ValueError):
            validate_transition(phase, "PROCESSING")
    assert not is_terminal("AGGREGATING")
