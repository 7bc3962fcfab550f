"""Action lifecycle state machine and auto-setup phases.

Defines valid action status transitions and enforces them. Invalid
transitions raise ValueError rather than silently proceeding.

State Diagram:

    PENDING ──> RUNNING ──┬──> COMPLETE
       │                  ├──> FAILED
       │                  └──> ABORTED
       ├──> ABORTED
       └──> INTERCEPTED   (intent folded into auto-setup, never run verbatim)

Auto-setup phases (conceptual, derived by the Orchestrator):

    IDLE ──> INSTALL_PENDING ──> INSTALLING ──> START_PENDING ──> STARTING ──> RUNNING
      └────────────────────────────────────────> START_PENDING
"""
from __future__ import annotations

from enum import Enum

from .models import ActionStatus

VALID_TRANSITIONS: dict[ActionStatus, set[ActionStatus]] = {
    ActionStatus.PENDING: {
        ActionStatus.RUNNING,
        ActionStatus.ABORTED,
        ActionStatus.INTERCEPTED,
    },
    ActionStatus.RUNNING: {
        ActionStatus.COMPLETE,
        ActionStatus.FAILED,
        ActionStatus.ABORTED,
    },
    ActionStatus.COMPLETE: set(),
    ActionStatus.FAILED: set(),
    ActionStatus.ABORTED: set(),
    ActionStatus.INTERCEPTED: set(),
}

TERMINAL_STATUSES: frozenset[ActionStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


class SetupPhase(str, Enum):
    IDLE = "idle"
    INSTALL_PENDING = "install_pending"
    INSTALLING = "installing"
    START_PENDING = "start_pending"
    STARTING = "starting"
    RUNNING = "running"


def validate_transition(current: ActionStatus, target: ActionStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid action transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(status: ActionStatus) -> bool:
    return status in TERMINAL_STATUSES
