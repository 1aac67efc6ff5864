"""The per-Application reconciliation state machine.

```
Idle -> Diffing -> Applying -> Settled
Diffing -> Settled                          nothing to apply, or a dry run
Applying -> ConflictRetry -> Applying       bounded retries of one object
any -> Failed                               unrecoverable error
Settled | Failed -> Idle                    next triggered attempt
Diffing | Applying | ConflictRetry -> Idle  cancelled or superseded
```

Every visited state is kept in `history` so that retries and their
exhaustion can be observed after a pass.
"""

import logging

from driftless.exceptions import InvalidTransitionError
from driftless.store import ReconcileState

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "TRANSITIONS",
    "StateMachine",
]

TRANSITIONS: dict[ReconcileState, set[ReconcileState]] = {
    ReconcileState.IDLE: {ReconcileState.DIFFING, ReconcileState.FAILED},
    ReconcileState.DIFFING: {
        ReconcileState.APPLYING,
        ReconcileState.SETTLED,
        ReconcileState.FAILED,
        ReconcileState.IDLE,
    },
    ReconcileState.APPLYING: {
        ReconcileState.CONFLICT_RETRY,
        ReconcileState.SETTLED,
        ReconcileState.FAILED,
        ReconcileState.IDLE,
    },
    ReconcileState.CONFLICT_RETRY: {
        ReconcileState.APPLYING,
        ReconcileState.FAILED,
        ReconcileState.IDLE,
    },
    ReconcileState.SETTLED: {ReconcileState.IDLE, ReconcileState.FAILED},
    ReconcileState.FAILED: {ReconcileState.IDLE},
}


class StateMachine:
    """Tracks the reconciliation state of one Application."""

    def __init__(
        self, application: str, state: ReconcileState = ReconcileState.IDLE
    ) -> None:
        self._application = application
        self._state = state
        self.history: list[ReconcileState] = [state]

    @property
    def state(self) -> ReconcileState:
        return self._state

    def can_transition(self, new_state: ReconcileState) -> bool:
        return new_state in TRANSITIONS[self._state]

    def transition(self, new_state: ReconcileState) -> None:
        """Move to a new state.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Invalid transition for {self._application}: "
                f"{self._state} -> {new_state}"
            )
        _LOGGER.debug("%s: %s -> %s", self._application, self._state, new_state)
        self._state = new_state
        self.history.append(new_state)

    def fail(self) -> None:
        """Move to Failed from any state."""
        if self._state != ReconcileState.FAILED:
            self.transition(ReconcileState.FAILED)

    def reset(self) -> None:
        """Return to Idle ahead of the next attempt, or after a cancellation."""
        if self._state != ReconcileState.IDLE:
            self.transition(ReconcileState.IDLE)

    def count(self, state: ReconcileState) -> int:
        """Number of times a state was entered."""
        return self.history.count(state)
