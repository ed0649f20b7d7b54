"""
Agentflow - API Dependencies
============================

Service wiring for the HTTP layer. Every collaborator is constructed once
and passed in explicitly; unconfigured external systems get their disabled
variant.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.core.config import PipelineConfig, Settings
from agentflow.core.events import EventBus, JsonlEventSink, MemoryEventSink
from agentflow.core.ingress import Normalizer, build_normalizers
from agentflow.core.merge import MergeScheduler, WorkflowMergeExecutor
from agentflow.core.notifications import Notifier
from agentflow.core.orchestrator import SessionOrchestrator
from agentflow.core.pipeline import (
    AgentExecutor,
    DisabledAgentExecutor,
    HttpAgentExecutor,
    PipelineRunner,
)
from agentflow.core.reactions import InactivityWatchdog
from agentflow.core.sessions import SessionRepository, SessionStore
from agentflow.core.workflows import (
    DisabledWorkflowDispatcher,
    HttpWorkflowDispatcher,
    WorkflowDispatcher,
)

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    config: PipelineConfig
    bus: EventBus
    store: SessionStore
    dispatcher: WorkflowDispatcher
    notifier: Notifier
    executor: AgentExecutor
    runner: PipelineRunner
    merge_scheduler: MergeScheduler
    orchestrator: SessionOrchestrator
    watchdog: InactivityWatchdog
    normalizers: Dict[str, Normalizer] = field(default_factory=dict)

    async def start(self) -> None:
        await self.store.load()
        self.watchdog.start()

    async def close(self) -> None:
        await self.watchdog.stop()
        await self.runner.stop_all()
        for client in (self.dispatcher, self.executor, self.notifier):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_container(
    settings: Settings,
    config: PipelineConfig,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    dispatcher: Optional[WorkflowDispatcher] = None,
    executor: Optional[AgentExecutor] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContainer:
    """Construct every service for one application instance."""
    sink = JsonlEventSink(config.events.path) if config.events.path else MemoryEventSink()
    bus = EventBus(sink=sink)

    repository = SessionRepository(session_factory) if session_factory is not None else None
    store = SessionStore(
        integration_prefix=config.branch.integration_prefix,
        base_branch=config.branch.main,
        repository=repository,
    )

    if dispatcher is None:
        if settings.WORKFLOW_RUNNER_URL:
            dispatcher = HttpWorkflowDispatcher(settings.WORKFLOW_RUNNER_URL, settings.WORKFLOW_RUNNER_TOKEN)
        else:
            dispatcher = DisabledWorkflowDispatcher()

    if executor is None:
        if settings.AGENT_RUNNER_URL:
            executor = HttpAgentExecutor(settings.AGENT_RUNNER_URL, settings.AGENT_RUNNER_TOKEN)
        else:
            executor = DisabledAgentExecutor()

    if notifier is None:
        notifier = Notifier(settings.NOTIFY_WEBHOOK_URL)

    runner = PipelineRunner(bus, executor, config)
    merge_scheduler = MergeScheduler(
        bus,
        WorkflowMergeExecutor(dispatcher, config.workflows.merge, settings.PROJECT_PATH),
        max_conflict_requeues=config.merge.max_conflict_requeues,
    )
    orchestrator = SessionOrchestrator(
        config,
        store,
        bus,
        dispatcher,
        notifier,
        merge_scheduler=merge_scheduler,
        runner=runner,
        project_path=settings.PROJECT_PATH,
    )
    merge_scheduler.on_escalate = orchestrator.on_merge_escalated

    watchdog = InactivityWatchdog(
        store,
        orchestrator.handle_fact,
        escalate_after_min=config.sessions.escalate_after_min,
        interval_seconds=settings.WATCHDOG_INTERVAL_SECONDS,
    )

    return ServiceContainer(
        settings=settings,
        config=config,
        bus=bus,
        store=store,
        dispatcher=dispatcher,
        notifier=notifier,
        executor=executor,
        runner=runner,
        merge_scheduler=merge_scheduler,
        orchestrator=orchestrator,
        watchdog=watchdog,
        normalizers=build_normalizers(config),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container attached to the running app."""
    return request.app.state.container
