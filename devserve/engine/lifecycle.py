"""Dev server state machine.

    STARTING ──> RUNNING ──> STOPPED
        │
        ├──> FAILED     (spawn error or exit inside the grace period)
        └──> STOPPED    (stopped before startup was confirmed)

STOPPED and FAILED are terminal: a worktree that is started again gets
a fresh entry.
"""
from __future__ import annotations

from .models import ServerEntry, ServerState

VALID_TRANSITIONS: dict[ServerState, frozenset[ServerState]] = {
    ServerState.STARTING: frozenset({
        ServerState.RUNNING,
        ServerState.FAILED,
        ServerState.STOPPED,
    }),
    ServerState.RUNNING: frozenset({ServerState.STOPPED}),
    ServerState.STOPPED: frozenset(),
    ServerState.FAILED: frozenset(),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: ServerState, target: ServerState):
        self.current = current
        self.target = target
        super().__init__(
            f"Dev server cannot go from {current.value} to {target.value}"
        )


def validate_transition(current: ServerState, target: ServerState) -> None:
    if target not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


def advance(entry: ServerEntry, target: ServerState) -> bool:
    """Move *entry* to *target*. False if it is already there.

    Raises:
        InvalidTransitionError: *target* is not reachable from the
            entry's current state.
    """
    if entry.state is target:
        return False
    validate_transition(entry.state, target)
    entry.state = target
    return True


def is_terminal(state: ServerState) -> bool:
    return not VALID_TRANSITIONS[state]
