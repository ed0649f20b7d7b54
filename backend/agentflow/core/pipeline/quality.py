"""
Agentflow - Quality Pipeline
============================

Runs a set of quality agents against one change:

1. Wave 1: every agent runs concurrently against the same read-only
   context. An agent that raises becomes an ``error`` result; the rest of
   the wave is unaffected.
2. Correction cycles (up to ``auto_correction.max_attempts``): re-run only
   agents whose latest status is ``failed``, with all prior results in the
   context. ``error`` results are never retried.
3. Overall status is ``passed`` iff no result is ``failed``.

Cancellation is cooperative: in-flight agent calls finish, no new cycle
starts once the cancel event is set.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import structlog

from agentflow.core.config import AgentOverride
from agentflow.core.events import EventBuilder, EventBus, EventType
from agentflow.core.pipeline.agents import (
    AgentContext,
    AgentExecutor,
    AgentMetadata,
    AgentResult,
    AgentStatus,
    Finding,
    resolve_agent_role,
)

logger = structlog.get_logger()


@dataclass
class QualityPipelineResult:
    agent_results: List[AgentResult]
    corrections_applied: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def overall_status(self) -> str:
        failed = any(r.status == AgentStatus.FAILED for r in self.agent_results)
        return "failed" if failed else "passed"

    def result_for(self, agent: str) -> Optional[AgentResult]:
        return next((r for r in self.agent_results if r.agent == agent), None)


class QualityPipeline:
    def __init__(
        self,
        bus: EventBus,
        executor: AgentExecutor,
        max_attempts: int = 2,
        agent_overrides: Optional[Mapping[str, AgentOverride]] = None,
        agent_timeout_seconds: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ):
        self.bus = bus
        self.executor = executor
        self.max_attempts = max_attempts
        self.agent_overrides = agent_overrides or {}
        self.agent_timeout_seconds = agent_timeout_seconds
        self.cancel = cancel or asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    async def run(
        self,
        request_id: str,
        context: AgentContext,
        agents: List[str],
    ) -> QualityPipelineResult:
        # One result per agent name
        agents = list(dict.fromkeys(agents))
        logger.info(
            "quality_pipeline_started",
            request_id=request_id,
            agents=agents,
            tier=context.tier,
            files_changed=context.diff_stats.files_changed,
        )

        results = await self._run_wave(request_id, agents, context, cycle=0)
        corrections: List[str] = []

        for cycle in range(1, self.max_attempts + 1):
            if self.cancelled:
                break

            failed = [r.agent for r in results if r.status == AgentStatus.FAILED]
            if not failed:
                break

            corrections.append(f"cycle-{cycle}: {','.join(failed)}")
            logger.info(
                "correction_cycle_started",
                request_id=request_id,
                cycle=cycle,
                failed_agents=failed,
            )
            await self.bus.publish(EventBuilder.correcting(request_id, cycle, failed))

            correction_context = context.model_copy(update={"previous_results": list(results)})
            corrected = await self._run_wave(request_id, failed, correction_context, cycle=cycle)

            # Last writer wins per agent name
            by_agent: Dict[str, AgentResult] = {r.agent: r for r in corrected}
            results = [by_agent.pop(r.agent, r) for r in results] + list(by_agent.values())

        outcome = QualityPipelineResult(
            agent_results=results,
            corrections_applied=corrections,
            cancelled=self.cancelled,
        )
        logger.info(
            "quality_pipeline_completed",
            request_id=request_id,
            overall_status=outcome.overall_status,
            agent_count=len(results),
            corrections=len(corrections),
            cancelled=outcome.cancelled,
        )
        return outcome

    # ==================== Waves ====================

    async def _run_wave(
        self,
        request_id: str,
        agents: List[str],
        context: AgentContext,
        cycle: int,
    ) -> List[AgentResult]:
        await self.bus.emit(
            EventType.PIPELINE_WAVE_STARTED,
            request_id,
            {"cycle": cycle, "agents": agents},
        )
        results = await asyncio.gather(
            *(self._run_agent(request_id, name, context, cycle) for name in agents)
        )
        await self.bus.emit(
            EventType.PIPELINE_WAVE_COMPLETED,
            request_id,
            {
                "cycle": cycle,
                "statuses": {r.agent: r.status.value for r in results},
            },
        )
        return list(results)

    async def _run_agent(
        self,
        request_id: str,
        name: str,
        context: AgentContext,
        cycle: int,
    ) -> AgentResult:
        role = resolve_agent_role(name, self.agent_overrides.get(name))
        await self.bus.publish(
            EventBuilder.agent_started(request_id, name, role.model, role.provider, cycle)
        )
        started = time.monotonic()

        try:
            call = self.executor.execute(role, context, cancel=self.cancel)
            if self.agent_timeout_seconds is not None:
                result = await asyncio.wait_for(call, timeout=self.agent_timeout_seconds)
            else:
                result = await call
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            if isinstance(e, asyncio.TimeoutError):
                message = f"timed out after {self.agent_timeout_seconds}s"
            else:
                message = str(e) or type(e).__name__
            logger.error(
                "agent_execution_failed",
                request_id=request_id,
                agent=name,
                error=message,
                duration_ms=duration_ms,
            )
            await self.bus.publish(
                EventBuilder.agent_failed(request_id, name, message, duration_ms)
            )
            return AgentResult(
                agent=name,
                status=AgentStatus.ERROR,
                findings=[
                    Finding(
                        severity="critical",
                        description=f"Agent execution error: {message}",
                        fix_applied=False,
                    )
                ],
                fixes_applied=0,
                metadata=AgentMetadata(
                    duration_ms=duration_ms,
                    model=role.model,
                    provider=role.provider,
                ),
            )

        await self.bus.publish(
            EventBuilder.agent_completed(
                request_id,
                name,
                result.status.value,
                len(result.findings),
                result.fixes_applied,
                result.metadata.duration_ms,
            )
        )
        logger.info(
            "agent_completed",
            request_id=request_id,
            agent=name,
            status=result.status.value,
            findings=len(result.findings),
            fixes=result.fixes_applied,
        )
        return result
