"""
Agentflow - Merge Scheduler
===========================

Serializes ready branches into the integration line.

- Requests are served by priority (higher first), then arrival order.
- A request whose dependencies have not merged yet is held, not failed.
- At most one merge is in flight per target branch.
- A conflict re-queues the request once with a fresh arrival number, so it
  goes behind anything already waiting at the same or higher priority.
  A second conflict (or an executor error) escalates.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol, Set

import structlog

from agentflow.core.events import EventBuilder, EventBus, EventType
from agentflow.core.workflows import WorkflowDispatchError, WorkflowDispatcher

logger = structlog.get_logger()


@dataclass
class MergeRequest:
    branch: str
    target: str
    session_id: Optional[str] = None
    pr_number: Optional[int] = None
    priority: int = 0
    depends_on: FrozenSet[str] = frozenset()
    seq: int = 0
    requeues: int = 0
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sort_key(self) -> tuple[int, int]:
        return (-self.priority, self.seq)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "target": self.target,
            "session_id": self.session_id,
            "pr_number": self.pr_number,
            "priority": self.priority,
            "depends_on": sorted(self.depends_on),
            "seq": self.seq,
            "requeues": self.requeues,
            "enqueued_at": self.enqueued_at.isoformat(),
        }


class MergeAttemptStatus(str, Enum):
    MERGED = "merged"
    # Handed to a workflow; completion arrives later via mark_merged, report_conflict
    # or report_failure
    DISPATCHED = "dispatched"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass(frozen=True)
class MergeAttempt:
    status: MergeAttemptStatus
    detail: Optional[str] = None


class MergeExecutor(Protocol):
    async def merge(self, request: MergeRequest) -> MergeAttempt: ...


EscalationCallback = Callable[[MergeRequest, str], Awaitable[None]]


class MergeScheduler:
    def __init__(
        self,
        bus: EventBus,
        executor: MergeExecutor,
        max_conflict_requeues: int = 1,
        on_escalate: Optional[EscalationCallback] = None,
    ):
        self.bus = bus
        self.executor = executor
        self.max_conflict_requeues = max_conflict_requeues
        self.on_escalate = on_escalate
        self._pending: List[MergeRequest] = []
        self._in_flight: Dict[str, MergeRequest] = {}  # target -> request
        self._merged: Set[str] = set()
        self._held_notified: Set[str] = set()
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    # ==================== Queries ====================

    def find(self, branch: str) -> Optional[MergeRequest]:
        for request in self._pending:
            if request.branch == branch:
                return request
        for request in self._in_flight.values():
            if request.branch == branch:
                return request
        return None

    def is_held(self, request: MergeRequest) -> bool:
        return not request.depends_on <= self._merged

    def snapshot(self) -> Dict[str, Any]:
        ordered = sorted(self._pending, key=lambda r: r.sort_key)
        return {
            "pending": [r.to_dict() for r in ordered if not self.is_held(r)],
            "held": [r.to_dict() for r in ordered if self.is_held(r)],
            "in_flight": [r.to_dict() for r in self._in_flight.values()],
            "merged": sorted(self._merged),
        }

    # ==================== Admission ====================

    async def enqueue(self, request: MergeRequest) -> MergeRequest:
        """Admit a request. Re-admitting a queued branch returns the existing request."""
        async with self._lock:
            existing = self.find(request.branch)
            if existing is not None:
                return existing
            request.seq = next(self._seq)
            self._pending.append(request)

        logger.info(
            "merge_queued",
            branch=request.branch,
            target=request.target,
            priority=request.priority,
            depends_on=sorted(request.depends_on),
        )
        await self.bus.publish(EventBuilder.merge_event(
            EventType.MERGE_QUEUED,
            request.branch,
            request.target,
            priority=request.priority,
            seq=request.seq,
        ))
        await self.pump()
        return request

    async def abandon(self, branch: str) -> bool:
        """Drop a branch whether it is queued or in flight, freeing its target."""
        async with self._lock:
            request = self._release(branch)
            if request is None:
                request = next((r for r in self._pending if r.branch == branch), None)
            self._pending = [r for r in self._pending if r.branch != branch]
            self._held_notified.discard(branch)

        if request is None:
            return False
        logger.info("merge_abandoned", branch=branch, target=request.target)
        await self.bus.publish(EventBuilder.merge_event(
            EventType.MERGE_ABANDONED, branch, request.target,
        ))
        await self.pump()
        return True

    # ==================== Scheduling ====================

    def _next_for(self, target: str) -> tuple[Optional[MergeRequest], List[MergeRequest]]:
        held = []
        for request in sorted(self._pending, key=lambda r: r.sort_key):
            if request.target != target:
                continue
            if self.is_held(request):
                held.append(request)
                continue
            return request, held
        return None, held

    async def pump(self) -> None:
        """Start the next ready merge for every idle target."""
        async with self._lock:
            started: List[MergeRequest] = []
            newly_held: List[MergeRequest] = []
            for target in sorted({r.target for r in self._pending}):
                if target in self._in_flight:
                    continue
                request, held = self._next_for(target)
                for h in held:
                    if h.branch not in self._held_notified:
                        self._held_notified.add(h.branch)
                        newly_held.append(h)
                if request is not None:
                    self._pending.remove(request)
                    self._in_flight[target] = request
                    started.append(request)

        for request in newly_held:
            await self.bus.publish(EventBuilder.merge_event(
                EventType.MERGE_HELD,
                request.branch,
                request.target,
                waiting_for=sorted(request.depends_on - self._merged),
            ))

        if started:
            await asyncio.gather(*(self._attempt(r) for r in started))

    async def _attempt(self, request: MergeRequest) -> None:
        await self.bus.publish(EventBuilder.merge_event(
            EventType.MERGE_STARTED, request.branch, request.target, seq=request.seq,
        ))
        try:
            attempt = await self.executor.merge(request)
        except Exception as e:
            logger.error("merge_executor_failed", branch=request.branch, error=str(e))
            attempt = MergeAttempt(MergeAttemptStatus.ERROR, str(e))

        if attempt.status == MergeAttemptStatus.MERGED:
            await self.mark_merged(request.branch)
        elif attempt.status == MergeAttemptStatus.CONFLICT:
            await self.report_conflict(request.branch, attempt.detail)
        elif attempt.status == MergeAttemptStatus.ERROR:
            await self._escalate(request, f"merge failed: {attempt.detail or 'unknown error'}")
        else:
            logger.info("merge_dispatched", branch=request.branch, target=request.target)

    # ==================== Completion ====================

    def _release(self, branch: str) -> Optional[MergeRequest]:
        for target, request in list(self._in_flight.items()):
            if request.branch == branch:
                del self._in_flight[target]
                return request
        return None

    async def mark_merged(self, branch: str) -> None:
        """Record a merge (from the executor or an observed pr.merged fact)."""
        async with self._lock:
            request = self._release(branch)
            self._pending = [r for r in self._pending if r.branch != branch]
            self._merged.add(branch)
            self._held_notified.discard(branch)

        if request is not None:
            logger.info("merge_completed", branch=branch, target=request.target)
            await self.bus.publish(EventBuilder.merge_event(
                EventType.MERGE_COMPLETED, branch, request.target,
            ))
        await self.pump()

    async def report_conflict(self, branch: str, detail: Optional[str] = None) -> bool:
        """
        Record a conflict on an in-flight merge.

        Returns False when ``branch`` has no merge in flight.
        """
        async with self._lock:
            request = self._release(branch)
            if request is None:
                return False
            requeue = request.requeues < self.max_conflict_requeues
            if requeue:
                request.requeues += 1
                request.seq = next(self._seq)
                self._pending.append(request)

        await self.bus.publish(EventBuilder.merge_event(
            EventType.MERGE_CONFLICT, branch, request.target, detail=detail,
        ))
        if requeue:
            logger.warning("merge_conflict_requeued", branch=branch, requeues=request.requeues)
            await self.bus.publish(EventBuilder.merge_event(
                EventType.MERGE_REQUEUED,
                branch,
                request.target,
                seq=request.seq,
                requeues=request.requeues,
            ))
            await self.pump()
        else:
            await self._escalate(
                request,
                f"merge conflict on {branch} persisted after {request.requeues} re-queue(s)"
                + (f": {detail}" if detail else ""),
            )
        return True

    async def report_failure(self, branch: str, detail: Optional[str] = None) -> bool:
        """Record a non-conflict failure of an in-flight merge; escalates."""
        async with self._lock:
            request = next((r for r in self._in_flight.values() if r.branch == branch), None)
        if request is None:
            return False
        await self._escalate(request, f"merge failed: {detail or 'unknown error'}")
        return True

    async def _escalate(self, request: MergeRequest, reason: str) -> None:
        async with self._lock:
            self._release(request.branch)
            self._pending = [r for r in self._pending if r.branch != request.branch]

        logger.warning("merge_escalated", branch=request.branch, reason=reason)
        await self.bus.publish(EventBuilder.merge_event(
            EventType.MERGE_ESCALATED, request.branch, request.target, reason=reason,
        ))
        if self.on_escalate is not None:
            try:
                await self.on_escalate(request, reason)
            except Exception as e:
                logger.error("merge_escalation_callback_failed", branch=request.branch, error=str(e))
        await self.pump()


class WorkflowMergeExecutor:
    """
    Hands merges to the merge workflow.

    Success arrives as a pr.merged fact. The workflow reports conflicts and
    failures through the integration API.
    """

    def __init__(self, dispatcher: WorkflowDispatcher, workflow: str, project_path: str = "."):
        self.dispatcher = dispatcher
        self.workflow = workflow
        self.project_path = project_path

    async def merge(self, request: MergeRequest) -> MergeAttempt:
        try:
            run = await self.dispatcher.dispatch(self.workflow, {
                "branch": request.branch,
                "targetBranch": request.target,
                "prNumber": request.pr_number,
                "projectPath": self.project_path,
            })
        except WorkflowDispatchError as e:
            return MergeAttempt(MergeAttemptStatus.ERROR, str(e))
        return MergeAttempt(MergeAttemptStatus.DISPATCHED, run.run_id)
