"""LoopFSM: Finite state machine for agent loop orchestration.

This module provides LoopFSM class for managing the state of one session's
agent loop. Transitions are validated against a transition map and invalid
ones raise InvalidTransitionError, leaving the state unchanged.
"""

from typing import Dict, Optional

from loopforge.fsm.loop_state import LoopState
from loopforge.errors import InvalidTransitionError


# Default transition map: defines valid state transitions for an agent loop
FSM_TRANSITIONS: Dict[LoopState, set[LoopState]] = {
    LoopState.IDLE: {LoopState.RUNNING},
    LoopState.RUNNING: {
        LoopState.RESTARTING,
        LoopState.STOPPED,
        LoopState.COMPLETED,
    },
    LoopState.RESTARTING: {LoopState.RUNNING, LoopState.STOPPED},
    LoopState.COMPLETED: {LoopState.REVIEWING, LoopState.RUNNING},
    LoopState.REVIEWING: {LoopState.RUNNING, LoopState.COMPLETED, LoopState.STOPPED},
    LoopState.STOPPED: {LoopState.RUNNING},
}

# States in which a loop cycle is still in flight
ACTIVE_STATES = frozenset({LoopState.RUNNING, LoopState.RESTARTING, LoopState.REVIEWING})


class LoopFSM:
    """Finite state machine for one session's agent loop.

    Tracks the current LoopState and the iteration counter of the current
    loop cycle. All mutation happens on the event loop thread that owns the
    session, so no locking is needed.

    Attributes:
        current_state: The current LoopState of the machine.
        iteration_count: Restarts performed within the current cycle.
        transitions: Transition map defining valid state changes.
        last_error: Last error message recorded against the machine.

    Example:
        >>> fsm = LoopFSM()
        >>> fsm.current_state
        <LoopState.IDLE: 'idle'>
        >>> fsm.transition_to(LoopState.RUNNING)
        <LoopState.RUNNING: 'running'>
    """

    def __init__(self, transitions: Optional[Dict[LoopState, set[LoopState]]] = None):
        """Initialize loop state machine.

        Args:
            transitions: Optional custom transition map. Defaults to FSM_TRANSITIONS.
        """
        self._current_state = LoopState.IDLE
        self._iteration_count = 0
        self._transitions = transitions if transitions is not None else FSM_TRANSITIONS
        self._last_error: Optional[str] = None

    @property
    def current_state(self) -> LoopState:
        """Get the current state (read-only)."""
        return self._current_state

    @property
    def iteration_count(self) -> int:
        """Get the iteration count (read-only)."""
        return self._iteration_count

    @property
    def transitions(self) -> Dict[LoopState, set[LoopState]]:
        """Get the transition map (read-only)."""
        return self._transitions

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message (read-only)."""
        return self._last_error

    @property
    def is_active(self) -> bool:
        """True while a loop cycle is running, restarting or reviewing."""
        return self._current_state in ACTIVE_STATES

    def transition_to(self, next_state: LoopState) -> LoopState:
        """Transition to a new state.

        Args:
            next_state: The target state to transition to.

        Returns:
            The new current state.

        Raises:
            InvalidTransitionError: If the transition is not in the map. The
                state is left unchanged.
        """
        if self._is_valid_transition(self._current_state, next_state):
            self._current_state = next_state
            return next_state

        error_msg = (
            f"Invalid transition: {self._current_state.value} -> {next_state.value}. "
            f"Valid transitions from {self._current_state.value}: "
            f"{sorted(s.value for s in self._transitions.get(self._current_state, set()))}"
        )
        self._last_error = error_msg
        raise InvalidTransitionError(self._current_state, next_state, error_msg)

    def _is_valid_transition(self, from_state: LoopState, to_state: LoopState) -> bool:
        valid_targets = self._transitions.get(from_state, set())
        return to_state in valid_targets

    def can_transition_to(self, next_state: LoopState) -> bool:
        """Check if a transition would be valid without changing state."""
        return self._is_valid_transition(self._current_state, next_state)

    def advance_iteration(self) -> int:
        """Increment the iteration counter by one and return the new value."""
        self._iteration_count += 1
        return self._iteration_count

    def reset_iterations(self) -> None:
        """Reset the iteration counter for a new loop cycle."""
        self._iteration_count = 0

    def reset(self) -> None:
        """Reset the state machine to IDLE with a zero iteration counter."""
        self._current_state = LoopState.IDLE
        self._iteration_count = 0
        self._last_error = None

    def __repr__(self) -> str:
        """String representation showing current state."""
        return (
            f"LoopFSM(current_state={self._current_state.value}, "
            f"iteration_count={self._iteration_count})"
        )
