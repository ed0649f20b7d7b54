"""
Agentflow - Reaction Actions
============================

Side-effect requests produced by the reaction engine and carried out by
the orchestrator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional, Union


class ActionKind(str, Enum):
    RESPAWN_AGENT = "respawn_agent"
    NOTIFY = "notify"
    ESCALATE = "escalate"
    AUTO_MERGE = "auto_merge"


@dataclass(frozen=True)
class RespawnAgent:
    prompt: str
    loop: Literal["ci", "review"]
    attempt: int
    max_retries: int

    kind = ActionKind.RESPAWN_AGENT


@dataclass(frozen=True)
class Notify:
    message: str

    kind = ActionKind.NOTIFY


@dataclass(frozen=True)
class Escalate:
    reason: str

    kind = ActionKind.ESCALATE


@dataclass(frozen=True)
class AutoMerge:
    priority: int = 0
    note: Optional[str] = None

    kind = ActionKind.AUTO_MERGE


Action = Union[RespawnAgent, Notify, Escalate, AutoMerge]
