"""
Agentflow - Reactions
=====================

Facts in, session transitions and actions out.
"""

from .actions import Action, ActionKind, AutoMerge, Escalate, Notify, RespawnAgent
from .engine import RULES, Decision, react, route
from .facts import Fact, FactKind
from .policy import ReactionPolicy, RetryPolicy
from .watchdog import InactivityWatchdog, inactivity_fact

__all__ = [
    "Action",
    "ActionKind",
    "AutoMerge",
    "Decision",
    "Escalate",
    "Fact",
    "FactKind",
    "InactivityWatchdog",
    "Notify",
    "RULES",
    "ReactionPolicy",
    "RespawnAgent",
    "RetryPolicy",
    "inactivity_fact",
    "react",
    "route",
]
