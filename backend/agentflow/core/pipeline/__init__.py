"""
Agentflow - Quality Pipeline
============================

Parallel quality agents with deterministic correction cycles.
"""

from .agents import (
    AGENT_NAMES,
    BASE_AGENT_ROLES,
    AgentContext,
    AgentExecutionError,
    AgentExecutor,
    AgentResult,
    AgentRole,
    AgentStatus,
    DiffStats,
    DisabledAgentExecutor,
    Finding,
    HttpAgentExecutor,
    resolve_agent_role,
)
from .quality import QualityPipeline, QualityPipelineResult
from .runner import (
    PIPELINE_TRANSITIONS,
    PipelineRequest,
    PipelineRunner,
    PipelineState,
    PipelineStatus,
    agents_for_tier,
    classify_tier,
)

__all__ = [
    "AGENT_NAMES",
    "BASE_AGENT_ROLES",
    "AgentContext",
    "AgentExecutionError",
    "AgentExecutor",
    "AgentResult",
    "AgentRole",
    "AgentStatus",
    "DiffStats",
    "DisabledAgentExecutor",
    "Finding",
    "HttpAgentExecutor",
    "PIPELINE_TRANSITIONS",
    "PipelineRequest",
    "PipelineRunner",
    "PipelineState",
    "PipelineStatus",
    "QualityPipeline",
    "QualityPipelineResult",
    "agents_for_tier",
    "classify_tier",
    "resolve_agent_role",
]
