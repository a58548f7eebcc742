"""
State machine for the execution lifecycle.

Enforces valid state transitions. Every status write in the interpreter,
resumer and administrative services goes through these checks.
"""

from typing import Dict, Set

from .enums import ExecutionStatus


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition from {from_state.value} to {to_state.value}"
        )


class ExecutionStateMachine:
    """
    State machine for workflow execution status transitions.

    Valid transitions:
    - RUNNING → WAITING: Suspension at a wait step (or a step retry)
    - WAITING → RUNNING: Resumption by the resumer
    - RUNNING → COMPLETED: Steps exhausted or empty branch target
    - RUNNING → FAILED: Unrecoverable step error
    - WAITING → FAILED: Resumed step vanished from the definition
    - RUNNING | WAITING → CANCELLED: Administrative cancellation

    Terminal states: COMPLETED, FAILED, CANCELLED
    """

    TRANSITIONS: Dict[ExecutionStatus, Set[ExecutionStatus]] = {
        ExecutionStatus.RUNNING: {
            ExecutionStatus.WAITING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        },
        ExecutionStatus.WAITING: {
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        },
        ExecutionStatus.COMPLETED: set(),  # Terminal state
        ExecutionStatus.FAILED: set(),  # Terminal state
        ExecutionStatus.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES: Set[ExecutionStatus] = {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }

    @classmethod
    def can_transition(
        cls,
        from_state: ExecutionStatus,
        to_state: ExecutionStatus,
    ) -> bool:
        """Check if a transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, set())

    @classmethod
    def validate_transition(
        cls,
        from_state: ExecutionStatus,
        to_state: ExecutionStatus,
    ) -> None:
        """Validate a transition, raising an error if invalid."""
        if not cls.can_transition(from_state, to_state):
            raise InvalidTransitionError(from_state, to_state)

    @classmethod
    def is_terminal(cls, state: ExecutionStatus) -> bool:
        """Check if a state is terminal (no further transitions possible)."""
        return state in cls.TERMINAL_STATES

