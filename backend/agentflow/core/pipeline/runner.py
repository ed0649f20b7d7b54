"""
Agentflow - Pipeline Runner
===========================

Accepts quality-pipeline requests, classifies them into a tier, picks the
agents for that tier and runs the QualityPipeline. Each request has its own
status machine and cancel event.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from agentflow.core.config import PipelineConfig, TiersConfig
from agentflow.core.events import EventBus, EventType
from agentflow.core.pipeline.agents import (
    AGENT_NAMES,
    AgentContext,
    AgentExecutor,
    AgentResult,
    DiffStats,
    Tier,
)
from agentflow.core.pipeline.quality import QualityPipeline
from agentflow.core.sessions.state_machine import StateMachine

logger = structlog.get_logger()


class PipelineStatus(str, Enum):
    ACCEPTED = "accepted"
    RUNNING = "running"
    APPROVED = "approved"
    FAILED = "failed"
    ERROR = "error"
    STOPPED = "stopped"


_P = PipelineStatus
_ENDINGS = frozenset({_P.APPROVED, _P.FAILED, _P.ERROR, _P.STOPPED})

PIPELINE_TRANSITIONS: Dict[PipelineStatus, frozenset[PipelineStatus]] = {
    _P.ACCEPTED: frozenset({_P.RUNNING, _P.FAILED, _P.ERROR, _P.STOPPED}),
    _P.RUNNING: _ENDINGS,
    _P.APPROVED: frozenset(),
    _P.FAILED: frozenset(),
    _P.ERROR: frozenset(),
    _P.STOPPED: frozenset(),
}


class PipelineRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: f"pipe-{uuid4().hex[:12]}")
    branch: str
    worktree_path: str
    base_branch: Optional[str] = None
    session_id: Optional[str] = None
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    tier: Optional[Tier] = None
    agents: Optional[List[str]] = None
    metadata: Dict[str, Any] = {}


@dataclass
class PipelineState:
    request_id: str
    request: PipelineRequest
    pipeline_branch: str
    status: PipelineStatus = PipelineStatus.ACCEPTED
    tier: Optional[Tier] = None
    agents: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    corrections_applied: List[str] = field(default_factory=list)
    agent_results: List[AgentResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "tier": self.tier,
            "branch": self.request.branch,
            "pipeline_branch": self.pipeline_branch,
            "session_id": self.request.session_id,
            "agents": self.agents,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "corrections_count": len(self.corrections_applied),
            "corrections_applied": self.corrections_applied,
            "agent_results": [r.model_dump(mode="json") for r in self.agent_results],
            "error": self.error,
        }


def classify_tier(stats: DiffStats, tiers: TiersConfig, override: Optional[Tier] = None) -> Tier:
    """Smallest tier whose file and line thresholds both hold."""
    if override:
        return override
    if stats.files_changed <= tiers.small.max_files and stats.lines_changed <= tiers.small.max_lines:
        return "small"
    if stats.files_changed <= tiers.medium.max_files and stats.lines_changed <= tiers.medium.max_lines:
        return "medium"
    return "large"


def agents_for_tier(tier: Tier, tiers: TiersConfig) -> List[str]:
    return list({
        "small": tiers.small_agents,
        "medium": tiers.medium_agents,
        "large": tiers.large_agents,
    }[tier])


class PipelineRunner:
    def __init__(self, bus: EventBus, executor: AgentExecutor, config: PipelineConfig):
        self.bus = bus
        self.executor = executor
        self.config = config
        self._states: Dict[str, PipelineState] = {}
        self._machines: Dict[str, StateMachine[PipelineStatus]] = {}
        self._cancel: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ==================== Queries ====================

    def get_status(self, request_id: str) -> Optional[PipelineState]:
        return self._states.get(request_id)

    def list_all(self) -> List[PipelineState]:
        return list(self._states.values())

    def is_running(self, request_id: str) -> bool:
        return request_id in self._cancel

    # ==================== Control ====================

    def validate(self, request: PipelineRequest) -> None:
        """
        Raises:
            ValueError: duplicate request id, unknown or repeated agent name
        """
        if request.request_id in self._states:
            raise ValueError(f"Pipeline request already exists: {request.request_id}")
        unknown = [a for a in request.agents or [] if a not in AGENT_NAMES]
        if unknown:
            raise ValueError(f"Unknown agents: {', '.join(unknown)}")
        repeated = sorted({a for a in request.agents or [] if request.agents.count(a) > 1})
        if repeated:
            raise ValueError(f"Agents listed more than once: {', '.join(repeated)}")

    def start(self, request: PipelineRequest) -> PipelineState:
        """Validate and run in the background. Returns the accepted state."""
        self.validate(request)
        state = self._accept(request)
        self._tasks[request.request_id] = asyncio.create_task(self._execute(state))
        return state

    async def run(self, request: PipelineRequest) -> PipelineState:
        """Validate and run to completion."""
        self.validate(request)
        state = self._accept(request)
        await self._execute(state)
        return state

    async def stop(self, request_id: str) -> bool:
        cancel = self._cancel.get(request_id)
        if cancel is None:
            return False
        cancel.set()
        logger.info("pipeline_stop_requested", request_id=request_id)
        return True

    async def stop_for_session(self, session_id: str) -> List[str]:
        stopped = []
        for request_id, state in list(self._states.items()):
            if state.request.session_id == session_id and await self.stop(request_id):
                stopped.append(request_id)
        return stopped

    async def stop_all(self) -> None:
        for cancel in list(self._cancel.values()):
            cancel.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== Internals ====================

    def _accept(self, request: PipelineRequest) -> PipelineState:
        state = PipelineState(
            request_id=request.request_id,
            request=request,
            pipeline_branch=f"{self.config.branch.pipeline_prefix}{request.branch}",
        )
        self._states[request.request_id] = state
        self._machines[request.request_id] = StateMachine(
            PipelineStatus.ACCEPTED, PIPELINE_TRANSITIONS, label=f"pipeline:{request.request_id}"
        )
        self._cancel[request.request_id] = asyncio.Event()
        return state

    def _move(self, state: PipelineState, status: PipelineStatus) -> None:
        machine = self._machines[state.request_id]
        machine.try_transition(status, context=state.request_id)
        state.status = machine.state
        if machine.is_terminal:
            state.completed_at = datetime.now(timezone.utc).isoformat()

    async def _execute(self, state: PipelineState) -> None:
        request = state.request
        request_id = request.request_id
        cancel = self._cancel[request_id]
        base_branch = request.base_branch or self.config.branch.main

        await self.bus.emit(
            EventType.PIPELINE_CREATED,
            request_id,
            {"branch": request.branch, "worktree_path": request.worktree_path},
        )

        try:
            tier = classify_tier(request.diff_stats, self.config.tiers, request.tier)
            agents = request.agents or agents_for_tier(tier, self.config.tiers)
            state.tier = tier
            state.agents = agents
            self._move(state, PipelineStatus.RUNNING)

            await self.bus.emit(
                EventType.PIPELINE_STARTED,
                request_id,
                {"tier": tier, "agents": agents, "model_count": len(agents)},
            )

            pipeline = QualityPipeline(
                self.bus,
                self.executor,
                max_attempts=self.config.auto_correction.max_attempts,
                agent_overrides=self.config.agents,
                agent_timeout_seconds=self.config.auto_correction.agent_timeout_seconds,
                cancel=cancel,
            )
            context = AgentContext(
                branch=request.branch,
                worktree_path=request.worktree_path,
                tier=tier,
                diff_stats=request.diff_stats,
                base_branch=base_branch,
                metadata=request.metadata,
            )
            result = await pipeline.run(request_id, context, agents)

            state.agent_results = result.agent_results
            state.corrections_applied = result.corrections_applied

            if result.cancelled:
                self._move(state, PipelineStatus.STOPPED)
                await self.bus.emit(EventType.PIPELINE_STOPPED, request_id, {"branch": request.branch})
                return

            passed = result.overall_status == "passed"
            self._move(state, PipelineStatus.APPROVED if passed else PipelineStatus.FAILED)
            await self.bus.emit(
                EventType.PIPELINE_COMPLETED if passed else EventType.PIPELINE_FAILED,
                request_id,
                {
                    "branch": request.branch,
                    "pipeline_branch": state.pipeline_branch,
                    "worktree_path": request.worktree_path,
                    "base_branch": base_branch,
                    "tier": tier,
                    "corrections_applied": result.corrections_applied,
                    "num_agents": len(result.agent_results),
                    "results": [r.model_dump(mode="json") for r in result.agent_results],
                },
                metadata=request.metadata,
            )
        except Exception as e:
            logger.error("pipeline_execution_failed", request_id=request_id, error=str(e), exc_info=True)
            state.error = str(e)
            self._move(state, PipelineStatus.ERROR)
            await self.bus.emit(EventType.PIPELINE_FAILED, request_id, {"error": str(e)})
        finally:
            self._cancel.pop(request_id, None)
            self._tasks.pop(request_id, None)
