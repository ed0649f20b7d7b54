"""
Agentflow - Merge Ordering
==========================
"""

from .scheduler import (
    MergeAttempt,
    MergeAttemptStatus,
    MergeExecutor,
    MergeRequest,
    MergeScheduler,
    WorkflowMergeExecutor,
)

__all__ = [
    "MergeAttempt",
    "MergeAttemptStatus",
    "MergeExecutor",
    "MergeRequest",
    "MergeScheduler",
    "WorkflowMergeExecutor",
]
