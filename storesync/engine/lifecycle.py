"""Resource session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> LOADING ──┬──> NOT_STARTED
                       │
                       └──> ACTIVE <──> WARNING ──> EXPIRED
                              │            │           │
                              └────────────┴───────────┴──> RESTARTING ──> ACTIVE

    Any state ──> ERROR   (fetch or command failure, restartable)
    Any state ──> IDLE    (sign-out)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.LOADING,
        SessionState.ACTIVE,  # app-restarted before the first fetch
        SessionState.ERROR,
    },
    SessionState.LOADING: {
        SessionState.NOT_STARTED,
        SessionState.ACTIVE,
        SessionState.WARNING,
        SessionState.EXPIRED,  # discovered on load, or app-timeout mid-fetch
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.NOT_STARTED: {
        SessionState.LOADING,
        SessionState.ACTIVE,  # app-restarted
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.ACTIVE: {
        SessionState.ACTIVE,  # app-restarted resets the window
        SessionState.WARNING,
        SessionState.EXPIRED,
        SessionState.RESTARTING,
        SessionState.LOADING,
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.WARNING: {
        SessionState.ACTIVE,
        SessionState.EXPIRED,
        SessionState.RESTARTING,
        SessionState.LOADING,
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.EXPIRED: {
        SessionState.RESTARTING,
        SessionState.ACTIVE,  # app-restarted
        SessionState.LOADING,
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.RESTARTING: {
        SessionState.ACTIVE,
        SessionState.WARNING,  # reconciling fetch with a short window
        SessionState.ERROR,
        SessionState.IDLE,
    },
    SessionState.ERROR: {
        SessionState.LOADING,
        SessionState.RESTARTING,
        SessionState.ACTIVE,  # app-restarted
        SessionState.IDLE,
    },
}

RESTARTABLE_STATES: frozenset[SessionState] = frozenset({
    SessionState.ACTIVE,
    SessionState.WARNING,
    SessionState.EXPIRED,
    SessionState.ERROR,
})

COUNTING_STATES: frozenset[SessionState] = frozenset({
    SessionState.ACTIVE,
    SessionState.WARNING,
})


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
