"""
Session State Machine
---------------------
Lifecycle of one streaming session with validated transitions.

RUNNING is the only non-terminal state; a session leaves it exactly once,
for COMPLETED, FAILED or CANCELLED.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Set
import logging
import threading


class SessionState(Enum):
    """Valid states for a streaming session."""
    RUNNING = auto()     # Generation in flight
    COMPLETED = auto()   # Reply persisted
    FAILED = auto()      # Persistence aborted
    CANCELLED = auto()   # Caller went away before completion


TERMINAL_STATES: Set[SessionState] = {
    SessionState.COMPLETED,
    SessionState.FAILED,
    SessionState.CANCELLED,
}

VALID_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.RUNNING: set(TERMINAL_STATES),
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
    SessionState.CANCELLED: set(),
}


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: SessionState
    to_state: SessionState
    timestamp: datetime
    reason: str
    metadata: Dict = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"StateTransition({self.from_state.name} -> {self.to_state.name}, "
            f"reason='{self.reason}')"
        )


class SessionStateMachine:
    """
    State machine for one streaming session.

    Responsibilities:
    - Track current state
    - Reject transitions out of a terminal state
    - Log all transitions
    - Notify listeners of state changes
    """

    def __init__(self, name: str = "session"):
        self._state = SessionState.RUNNING
        self._history: List[StateTransition] = []
        self._listeners: List[Callable[[StateTransition], None]] = []
        self._lock = threading.Lock()
        self._logger = logging.getLogger(f"starchat.state.{name}")

    @property
    def state(self) -> SessionState:
        """Get current state."""
        return self._state

    @property
    def history(self) -> List[StateTransition]:
        """Get transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition(self, to_state: SessionState) -> bool:
        """Check if transition to given state is valid."""
        return to_state in VALID_TRANSITIONS.get(self._state, set())

    def transition(
        self,
        to_state: SessionState,
        reason: str,
        metadata: Optional[Dict] = None
    ) -> StateTransition:
        """
        Transition to a new state.

        Raises:
            ValueError: If transition is not valid
        """
        with self._lock:
            if not self.can_transition(to_state):
                valid_names = [s.name for s in VALID_TRANSITIONS.get(self._state, set())]
                raise ValueError(
                    f"Invalid transition: {self._state.name} -> {to_state.name}. "
                    f"Valid targets: {valid_names}"
                )

            transition = StateTransition(
                from_state=self._state,
                to_state=to_state,
                timestamp=datetime.now(),
                reason=reason,
                metadata=metadata or {}
            )
            self._state = to_state
            self._history.append(transition)

        self._logger.info(
            f"State transition: {transition.from_state.name} -> {to_state.name} "
            f"(reason: {reason})"
        )

        for listener in self._listeners:
            try:
                listener(transition)
            except Exception as e:
                self._logger.warning(f"Listener error: {e}")

        return transition

    def add_listener(self, callback: Callable[[StateTransition], None]) -> None:
        """Add a state change listener."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[StateTransition], None]) -> None:
        """Remove a state change listener."""
        if callback in self._listeners:
            self._listeners.remove(callback)
