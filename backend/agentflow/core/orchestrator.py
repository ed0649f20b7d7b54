"""
Agentflow - Session Orchestrator
================================

Single writer for sessions. Wires ingress facts, the reaction engine, the
workflow runner, notifications, the merge scheduler and the quality
pipeline runner together.

Fact handling:
1. Drop facts whose id was already processed.
2. Find (or adopt) the session for the fact's branch.
3. Under the session's lock: react, commit, remember the fact id.
4. Outside the lock: carry out the actions. Infrastructure errors become
   ActionOutcome data; the committed transition stands.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from agentflow.core.config import PipelineConfig
from agentflow.core.events import EventBuilder, EventBus, EventType
from agentflow.core.merge.scheduler import MergeRequest, MergeScheduler
from agentflow.core.notifications import Notifier, NotificationError
from agentflow.core.pipeline.runner import PipelineRunner
from agentflow.core.reactions.actions import (
    Action,
    AutoMerge,
    Escalate,
    Notify,
    RespawnAgent,
)
from agentflow.core.reactions.engine import Decision, react
from agentflow.core.reactions.facts import Fact, FactKind
from agentflow.core.reactions.policy import ReactionPolicy
from agentflow.core.sessions.session import Session, SessionStatus
from agentflow.core.sessions.state_machine import TransitionError
from agentflow.core.sessions.store import SessionStore
from agentflow.core.workflows import WorkflowDispatchError, WorkflowDispatcher

logger = structlog.get_logger()


class SessionConflictError(Exception):
    """Work for the same issue or branch is already in progress."""


class ParallelLimitError(Exception):
    """Accepting another session would exceed tracker.max_parallel."""


@dataclass
class ActionOutcome:
    action: str
    ok: bool
    detail: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class FactOutcome:
    status: str  # "processed" | "ignored" | "error"
    fact_id: str
    action: Optional[str] = None
    branch: Optional[str] = None
    pr_number: Optional[int] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None
    actions: List[ActionOutcome] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status}
        for key in ("action", "branch", "pr_number", "session_id", "reason"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        if self.actions:
            body["actions"] = [a.to_dict() for a in self.actions]
        return body


@dataclass
class StartSessionRequest:
    title: str = ""
    prompt: str = ""
    issue_number: Optional[int] = None
    branch: Optional[str] = None
    base_branch: Optional[str] = None
    project_path: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None


def _slug(text: str, limit: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:limit].rstrip("-") or "work"


class SessionOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        store: SessionStore,
        bus: EventBus,
        dispatcher: WorkflowDispatcher,
        notifier: Notifier,
        merge_scheduler: Optional[MergeScheduler] = None,
        runner: Optional[PipelineRunner] = None,
        project_path: str = ".",
        seen_capacity: int = 10_000,
    ):
        self.config = config
        self.policy = ReactionPolicy.from_config(config)
        self.store = store
        self.bus = bus
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.merge_scheduler = merge_scheduler
        self.runner = runner
        self.project_path = project_path
        self.seen_capacity = seen_capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    @property
    def integration_prefix(self) -> str:
        return self.config.branch.integration_prefix

    # ==========================================================================
    # Facts
    # ==========================================================================

    def _remember(self, fact_id: str) -> None:
        self._seen[fact_id] = None
        self._seen.move_to_end(fact_id)
        while len(self._seen) > self.seen_capacity:
            self._seen.popitem(last=False)

    def has_seen(self, fact_id: str) -> bool:
        return fact_id in self._seen

    async def _ignore(self, fact: Fact, reason: str, session: Optional[Session] = None) -> FactOutcome:
        logger.info(
            "fact_ignored",
            fact_id=fact.id,
            kind=fact.kind.value,
            branch=fact.branch,
            reason=reason,
            session_id=session.id if session else None,
        )
        if session is not None:
            await self.bus.publish(EventBuilder.reaction_ignored(
                fact.id, fact.kind.value, fact.branch, reason, session.id,
            ))
        return FactOutcome(
            status="ignored",
            fact_id=fact.id,
            branch=session.branch if session else None,
            session_id=session.id if session else None,
            reason=reason,
        )

    async def _session_for(self, fact: Fact) -> Optional[Session]:
        if fact.kind == FactKind.SESSION_INACTIVE:
            return self.store.get(fact.details.get("session_id", ""))

        session, adopted = await self.store.get_or_adopt(
            fact.branch, fact.pr_number, fact.base_branch,
        )
        if adopted:
            await self.bus.emit(
                EventType.SESSION_ADOPTED,
                session.id,
                {"branch": session.branch, "pr_number": session.pr_number},
            )
        return session

    async def handle_fact(self, fact: Fact) -> FactOutcome:
        """Process one fact end to end."""
        if self.has_seen(fact.id):
            return await self._ignore(fact, "duplicate fact already processed")

        if fact.kind != FactKind.SESSION_INACTIVE and not fact.branch.startswith(self.integration_prefix):
            return await self._ignore(fact, "not an integration branch")

        session = await self._session_for(fact)
        if session is None:
            return await self._ignore(fact, "no session for fact")

        async with self.store.lock(session.id):
            if self.has_seen(fact.id):
                return await self._ignore(fact, "duplicate fact already processed")

            current = self.store.require(session.id)
            if current.has_applied(fact.id):
                self._remember(fact.id)
                return await self._ignore(fact, "duplicate fact already processed", current)

            try:
                decision = react(fact, current, self.policy)
            except TransitionError as e:
                logger.error(
                    "reaction_transition_rejected",
                    fact_id=fact.id,
                    session_id=current.id,
                    error=str(e),
                )
                return FactOutcome(
                    status="error",
                    fact_id=fact.id,
                    branch=current.branch,
                    session_id=current.id,
                    reason=str(e),
                )

            if decision.ignored:
                self._remember(fact.id)
                return await self._ignore(fact, decision.reason, current)

            updated = await self.store.commit(decision.session.record_fact(fact.id))
            self._remember(fact.id)

        logger.info(
            "fact_processed",
            fact_id=fact.id,
            kind=fact.kind.value,
            session_id=updated.id,
            branch=updated.branch,
            from_status=current.status.value,
            to_status=updated.status.value,
            label=decision.label,
            actions=[a.kind.value for a in decision.actions],
        )
        await self._publish_decision(fact, current, decision)
        await self._after_decision(fact, updated, decision)

        outcomes = [await self._execute(action, updated, fact) for action in decision.actions]
        return FactOutcome(
            status="processed",
            fact_id=fact.id,
            action=decision.label,
            branch=updated.branch,
            pr_number=updated.pr_number,
            session_id=updated.id,
            reason=decision.reason or None,
            actions=outcomes,
        )

    async def _publish_decision(self, fact: Fact, before: Session, decision: Decision) -> None:
        after = decision.session
        if after.status != before.status:
            await self.bus.publish(EventBuilder.session_status_changed(
                after.id, after.branch, before.status.value, after.status.value,
                after.last_transition_reason,
            ))
        await self.bus.emit(
            EventType.REACTION_DECIDED,
            after.id,
            {
                "fact_id": fact.id,
                "kind": fact.kind.value,
                "label": decision.label,
                "reason": decision.reason,
                "actions": [a.kind.value for a in decision.actions],
                "ci_retries": after.ci_retries,
                "review_retries": after.review_retries,
            },
        )

    async def _after_decision(self, fact: Fact, session: Session, decision: Decision) -> None:
        """Integration events that follow from the fact itself rather than an action."""
        if fact.kind == FactKind.REVIEW_APPROVED:
            await self.bus.emit(
                EventType.REVIEW_LOOP_COMPLETED,
                session.id,
                {"branch": session.branch, "pr_number": session.pr_number, "reason": "approved"},
            )
            await self._safe_push("pr.approved", {"prNumber": session.pr_number, "branch": session.branch})
        elif fact.kind == FactKind.PR_MERGED:
            await self.bus.emit(
                EventType.INTEGRATION_PR_MERGED,
                session.id,
                {
                    "branch": session.branch,
                    "pr_number": session.pr_number,
                    "merge_commit_sha": fact.details.get("merge_commit_sha"),
                },
            )
            if self.merge_scheduler is not None:
                await self.merge_scheduler.mark_merged(session.integration_branch)
        elif fact.kind == FactKind.CI_PASSED:
            await self.bus.emit(
                EventType.INTEGRATION_CI_PASSED, session.id, {"branch": session.branch},
            )
        elif fact.kind == FactKind.CI_FAILED:
            await self.bus.emit(
                EventType.INTEGRATION_CI_FAILED,
                session.id,
                {"branch": session.branch, "conclusion": fact.details.get("conclusion")},
            )

    async def _safe_push(self, key: str, payload: Dict[str, Any]) -> None:
        try:
            await self.dispatcher.push_event(key, payload)
        except WorkflowDispatchError as e:
            logger.error("workflow_event_push_failed", key=key, error=str(e))

    # ==========================================================================
    # Actions
    # ==========================================================================

    def _workflow_input(self, session: Session, **extra: Any) -> Dict[str, Any]:
        return {
            "sessionId": session.id,
            "branch": session.branch,
            "integrationBranch": session.integration_branch,
            "prNumber": session.pr_number,
            "baseBranch": session.base_branch,
            "projectPath": session.project_path,
            **extra,
        }

    async def _execute(self, action: Action, session: Session, fact: Optional[Fact]) -> ActionOutcome:
        try:
            detail = await self._carry_out(action, session, fact)
            return ActionOutcome(action=action.kind.value, ok=True, detail=detail)
        except (WorkflowDispatchError, NotificationError) as e:
            error = str(e)
        except Exception as e:
            logger.error(
                "action_unexpected_error",
                action=action.kind.value,
                session_id=session.id,
                error=str(e),
                exc_info=True,
            )
            error = f"{type(e).__name__}: {e}"

        logger.error("action_failed", action=action.kind.value, session_id=session.id, error=error)
        await self.bus.publish(EventBuilder.action_failed(session.id, action.kind.value, error))
        return ActionOutcome(action=action.kind.value, ok=False, error=error)

    async def _carry_out(self, action: Action, session: Session, fact: Optional[Fact]) -> Optional[str]:
        if isinstance(action, RespawnAgent):
            return await self._respawn(action, session, fact)
        if isinstance(action, Notify):
            await self.notifier.notify_session(session.id, session.branch, action.message)
            await self.bus.emit(EventType.REACTION_NOTIFIED, session.id, {"message": action.message})
            return None
        if isinstance(action, Escalate):
            await self.bus.publish(EventBuilder.session_escalated(session.id, session.branch, action.reason))
            if self.runner is not None:
                await self.runner.stop_for_session(session.id)
            await self.notifier.notify_escalation(session.id, session.branch, action.reason)
            return None
        if isinstance(action, AutoMerge):
            return await self._auto_merge(action, session)
        raise TypeError(f"Unknown action: {action!r}")

    async def _respawn(self, action: RespawnAgent, session: Session, fact: Optional[Fact]) -> str:
        if action.loop == "review":
            workflow = self.config.workflows.review_loop
            await self.bus.emit(
                EventType.REVIEW_LOOP_STARTED,
                session.id,
                {
                    "branch": session.branch,
                    "pr_number": session.pr_number,
                    "reviewer": fact.actor if fact else None,
                },
            )
        else:
            workflow = self.config.workflows.ci_fix

        run = await self.dispatcher.dispatch(workflow, self._workflow_input(
            session,
            prompt=action.prompt,
            attempt=action.attempt,
            maxRetries=action.max_retries,
        ))
        await self.bus.emit(
            EventType.REACTION_AGENT_RESPAWNED,
            session.id,
            {
                "loop": action.loop,
                "workflow": workflow,
                "run_id": run.run_id,
                "attempt": action.attempt,
                "max_retries": action.max_retries,
            },
        )
        return run.run_id

    async def _auto_merge(self, action: AutoMerge, session: Session) -> Optional[str]:
        await self.bus.emit(EventType.REACTION_AUTO_MERGE, session.id, {"branch": session.branch})
        if self.merge_scheduler is None:
            logger.info("auto_merge_without_scheduler", session_id=session.id)
            return None
        if session.status != SessionStatus.APPROVED or not session.ci_green:
            return "not admitted: session is not approved with green CI"
        request = await self.merge_scheduler.enqueue(MergeRequest(
            branch=session.integration_branch,
            target=session.base_branch,
            session_id=session.id,
            pr_number=session.pr_number,
            priority=action.priority,
        ))
        return f"queued #{request.seq}"

    # ==========================================================================
    # Session lifecycle (human and API actions)
    # ==========================================================================

    async def start_session(self, request: StartSessionRequest) -> tuple[Session, ActionOutcome]:
        """
        Accept new work and submit the implement workflow.

        Raises:
            ParallelLimitError: too many active sessions
            SessionConflictError: issue or branch already has an active session
        """
        max_parallel = self.config.tracker.max_parallel
        if self.store.active_count() >= max_parallel:
            raise ParallelLimitError(f"Max parallel sessions reached ({max_parallel})")

        if request.issue_number is not None:
            for existing in self.store.list():
                if existing.issue_number == request.issue_number and existing.is_active:
                    raise SessionConflictError(
                        f"Issue #{request.issue_number} already has active session {existing.id}"
                    )

        if request.branch:
            branch = self.store.strip_prefix(request.branch)
        elif request.issue_number is not None:
            branch = f"issue/{request.issue_number}/{_slug(request.title or request.prompt)}"
        else:
            branch = f"prompt/{uuid4().hex[:8]}-{_slug(request.title or request.prompt, 24)}"

        existing = self.store.by_branch(branch)
        if existing is not None and not existing.is_terminal:
            raise SessionConflictError(f"Branch {branch} already has session {existing.id}")

        session = Session(
            branch=branch,
            integration_branch=f"{self.integration_prefix}{branch}",
            base_branch=request.base_branch or self.config.branch.main,
            project_path=request.project_path or self.project_path,
            issue_number=request.issue_number,
            title=request.title,
            prompt=request.prompt,
            model=request.model or self.config.orchestrator.model,
            provider=request.provider or self.config.orchestrator.provider,
        )
        await self.bus.emit(EventType.SESSION_CREATED, session.id, {"branch": branch})
        session = session.transition(SessionStatus.PLANNING, reason="accepted")
        await self.store.add(session)
        await self.bus.emit(
            EventType.SESSION_ACCEPTED,
            session.id,
            {"branch": branch, "issue_number": session.issue_number, "title": session.title},
        )
        logger.info("session_started", session_id=session.id, branch=branch, issue=session.issue_number)

        outcome = await self._dispatch_implement(session)
        return session, outcome

    async def _dispatch_implement(self, session: Session, resume: bool = False) -> ActionOutcome:
        workflow = self.config.workflows.implement
        try:
            run = await self.dispatcher.dispatch(workflow, self._workflow_input(
                session,
                issueNumber=session.issue_number,
                title=session.title,
                prompt=session.prompt,
                model=session.model,
                provider=session.provider,
                resume=resume,
            ))
        except WorkflowDispatchError as e:
            logger.error("implement_dispatch_failed", session_id=session.id, error=str(e))
            await self.bus.publish(EventBuilder.action_failed(session.id, "dispatch_implement", str(e)))
            return ActionOutcome(action="dispatch_implement", ok=False, error=str(e))
        await self.bus.emit(
            EventType.WORKFLOW_DISPATCHED,
            session.id,
            {"workflow": workflow, "run_id": run.run_id, "dispatched": run.dispatched},
        )
        return ActionOutcome(action="dispatch_implement", ok=True, detail=run.run_id)

    async def _human_transition(
        self,
        session_id: str,
        to_status: SessionStatus,
        reason: str,
        **changes: Any,
    ) -> tuple[Session, Session]:
        async with self.store.lock(session_id):
            before = self.store.require(session_id)
            after = before.transition(to_status, reason=reason, **changes)
            await self.store.commit(after)
        await self.bus.publish(EventBuilder.session_status_changed(
            after.id, after.branch, before.status.value, after.status.value, reason,
        ))
        return before, after

    async def escalate_session(self, session_id: str, reason: str) -> Session:
        """
        Raises:
            SessionNotFoundError: unknown id
            TransitionError: session is terminal or already escalated
        """
        _, session = await self._human_transition(session_id, SessionStatus.ESCALATED, reason)
        logger.warning("session_escalated", session_id=session_id, reason=reason)
        await self._execute(Escalate(reason=reason), session, None)
        return session

    async def cancel_session(self, session_id: str, reason: str = "cancelled by user") -> Session:
        _, session = await self._human_transition(session_id, SessionStatus.CANCELLED, reason)
        stopped: List[str] = []
        if self.runner is not None:
            stopped = await self.runner.stop_for_session(session_id)
        if self.merge_scheduler is not None:
            await self.merge_scheduler.abandon(session.integration_branch)
        await self.bus.emit(
            EventType.SESSION_CANCELLED,
            session_id,
            {"branch": session.branch, "stopped_pipelines": stopped},
        )
        logger.info("session_cancelled", session_id=session_id, stopped_pipelines=stopped)
        return session

    async def resume_session(self, session_id: str) -> tuple[Session, ActionOutcome]:
        """Hand an escalated session back to automation."""
        _, session = await self._human_transition(
            session_id,
            SessionStatus.IMPLEMENTING,
            "resumed by user",
            escalated=False,
            escalation_reason=None,
        )
        await self.bus.emit(EventType.SESSION_RESUMED, session_id, {"branch": session.branch})
        outcome = await self._dispatch_implement(session, resume=True)
        return session, outcome

    async def archive_session(self, session_id: str) -> Session:
        async with self.store.lock(session_id):
            session = await self.store.archive(session_id)
        if self.runner is not None:
            await self.runner.stop_for_session(session_id)
        await self.bus.emit(EventType.SESSION_ARCHIVED, session_id, {"branch": session.branch})
        return session

    async def on_merge_escalated(self, request: MergeRequest, reason: str) -> None:
        """Merge scheduler gave up on a request: escalate its session."""
        if request.session_id is None:
            return
        try:
            await self.escalate_session(request.session_id, reason)
        except (TransitionError, LookupError) as e:
            logger.warning("merge_escalation_not_applied", session_id=request.session_id, error=str(e))
