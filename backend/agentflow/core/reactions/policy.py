"""
Agentflow - Reaction Policy
===========================

Static mapping from fact kinds to action templates, built once from the
pipeline config.
"""

from dataclasses import dataclass
from typing import Literal

from agentflow.core.config import PipelineConfig, RetryReactionConfig


@dataclass(frozen=True)
class RetryPolicy:
    action: Literal["respawn_agent", "notify", "escalate"]
    prompt: str
    max_retries: int


@dataclass(frozen=True)
class ReactionPolicy:
    ci_failed: RetryPolicy
    changes_requested: RetryPolicy
    auto_merge: bool
    approved_message: str
    stuck_action: Literal["escalate", "notify"]
    stuck_message: str
    escalate_after_min: int

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ReactionPolicy":
        reactions = config.reactions
        sessions = config.sessions

        def retry(section: RetryReactionConfig, fallback_max: int) -> RetryPolicy:
            return RetryPolicy(
                action=section.action,
                prompt=section.prompt,
                max_retries=section.max_retries if section.max_retries is not None else fallback_max,
            )

        return cls(
            ci_failed=retry(reactions.ci_failed, sessions.max_retries_ci),
            changes_requested=retry(reactions.changes_requested, sessions.max_retries_review),
            auto_merge=sessions.auto_merge or reactions.approved_and_green.action == "auto_merge",
            approved_message=reactions.approved_and_green.message,
            stuck_action=reactions.agent_stuck.action,
            stuck_message=reactions.agent_stuck.message,
            escalate_after_min=sessions.escalate_after_min,
        )
