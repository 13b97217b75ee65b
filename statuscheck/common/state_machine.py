"""Run phase transitions enforced by the orchestrator."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "LOOKUP": {"PROCESSING", "FAILED"},
    "PROCESSING": {"AGGREGATING", "FAILED"},
    "AGGREGATING": {"COMPLETED", "FAILED"},
    "COMPLETED": set(),
    "FAILED": set(),
}

TERMINAL_PHASES = frozenset({"COMPLETED", "FAILED"})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the phase table."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(phase: str) -> bool:
    return phase in TERMINAL_PHASES
