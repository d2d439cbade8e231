"""Session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> PROCESSING ──┬──> IDLE  (completed / stopped / errored)
                          │
                          └──> AWAITING_PERMISSION ──┬──> PROCESSING
                                                     └──> IDLE  (stopped / errored)

    IDLE ──> ARCHIVING ──> IDLE     (start_new_chat awaiting the archive)
    IDLE ──> LOADING   ──> IDLE     (loading an archived conversation)
    IDLE ──> RESTORING ──> IDLE     (rolling the workspace back to a checkpoint)
"""
from __future__ import annotations

from enum import Enum


class SessionState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    AWAITING_PERMISSION = "awaiting_permission"
    ARCHIVING = "archiving"
    LOADING = "loading"
    RESTORING = "restoring"


class GenerationOutcome(Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"


# States in which a generation owns the session.
PROCESSING_STATES = frozenset({
    SessionState.PROCESSING,
    SessionState.AWAITING_PERMISSION,
})

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.PROCESSING,
        SessionState.ARCHIVING,
        SessionState.LOADING,
        SessionState.RESTORING,
    },
    SessionState.PROCESSING: {
        SessionState.AWAITING_PERMISSION,
        SessionState.IDLE,
    },
    SessionState.AWAITING_PERMISSION: {
        SessionState.PROCESSING,
        SessionState.IDLE,
    },
    SessionState.ARCHIVING: {
        SessionState.IDLE,
    },
    SessionState.LOADING: {
        SessionState.IDLE,
    },
    SessionState.RESTORING: {
        SessionState.IDLE,
    },
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
