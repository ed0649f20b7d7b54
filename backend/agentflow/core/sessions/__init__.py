"""
Agentflow - Sessions
====================
"""

from .repository import SessionRepository
from .session import (
    APPLIED_FACTS_LIMIT,
    SESSION_TRANSITIONS,
    TERMINAL_STATUSES,
    Session,
    SessionStatus,
)
from .state_machine import StateMachine, TransitionError, check_transition
from .store import SessionNotFoundError, SessionStore

__all__ = [
    "APPLIED_FACTS_LIMIT",
    "SESSION_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Session",
    "SessionNotFoundError",
    "SessionRepository",
    "SessionStatus",
    "SessionStore",
    "StateMachine",
    "TransitionError",
    "check_transition",
]
