"""
Agentflow - State Machine
=========================

Explicit finite-state machine over a transition table. Used for session
lifecycles (via ``check_transition``) and for quality-pipeline runs.
"""

from enum import Enum
from typing import Generic, Mapping, Optional, TypeVar

import structlog

logger = structlog.get_logger()

S = TypeVar("S", bound=Enum)


class TransitionError(Exception):
    """Raised on a transition the table does not allow."""

    def __init__(self, from_state: Enum, to_state: Enum, label: str = "state"):
        self.from_state = from_state
        self.to_state = to_state
        self.label = label
        super().__init__(
            f"Invalid {label} transition: {from_state.value} -> {to_state.value}"
        )


def check_transition(
    transitions: Mapping[S, frozenset[S]],
    from_state: S,
    to_state: S,
    label: str = "state",
) -> None:
    """Raise TransitionError unless ``from_state -> to_state`` is allowed."""
    if to_state not in transitions.get(from_state, frozenset()):
        raise TransitionError(from_state, to_state, label)


class StateMachine(Generic[S]):
    """Mutable holder of a current state, validated against a table."""

    def __init__(
        self,
        initial: S,
        transitions: Mapping[S, frozenset[S]],
        label: str = "state",
    ):
        self._state = initial
        self._transitions = transitions
        self.label = label
        self.history: list[tuple[S, S]] = []

    @property
    def state(self) -> S:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return not self._transitions.get(self._state)

    def can_transition(self, to_state: S) -> bool:
        return to_state in self._transitions.get(self._state, frozenset())

    def transition(self, to_state: S) -> S:
        check_transition(self._transitions, self._state, to_state, self.label)
        self.history.append((self._state, to_state))
        self._state = to_state
        return to_state

    def try_transition(self, to_state: S, context: Optional[str] = None) -> bool:
        """Like ``transition`` but logs and returns False on an invalid move."""
        try:
            self.transition(to_state)
            return True
        except TransitionError as e:
            logger.warning(
                "transition_rejected",
                label=self.label,
                from_state=e.from_state.value,
                to_state=e.to_state.value,
                context=context,
            )
            return False
