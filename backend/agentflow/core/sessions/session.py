"""
Agentflow - Session
===================

The durable record of one orchestrated unit of work. Sessions are
immutable values: every change produces a new Session, and the store is
the only place a session id is rebound to its latest value.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from agentflow.core.sessions.state_machine import check_transition


class SessionStatus(str, Enum):
    CREATED = "created"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    PR_CREATED = "pr_created"
    CI_RUNNING = "ci_running"
    CI_PASSED = "ci_passed"
    CI_FAILED = "ci_failed"
    REVIEW_PENDING = "review_pending"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"
    MERGED = "merged"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    FAILED = "failed"


_S = SessionStatus
_OUT = frozenset({_S.ESCALATED, _S.CANCELLED})

SESSION_TRANSITIONS: Dict[SessionStatus, frozenset[SessionStatus]] = {
    _S.CREATED: frozenset({_S.PLANNING, _S.IMPLEMENTING, _S.FAILED}) | _OUT,
    _S.PLANNING: frozenset({_S.IMPLEMENTING, _S.FAILED}) | _OUT,
    _S.IMPLEMENTING: frozenset({_S.PR_CREATED, _S.CI_RUNNING, _S.FAILED}) | _OUT,
    _S.PR_CREATED: frozenset({_S.CI_RUNNING, _S.REVIEW_PENDING, _S.FAILED}) | _OUT,
    _S.CI_RUNNING: frozenset({_S.CI_PASSED, _S.CI_FAILED, _S.REVIEW_PENDING}) | _OUT,
    _S.CI_PASSED: frozenset({_S.REVIEW_PENDING, _S.CI_RUNNING, _S.MERGED}) | _OUT,
    _S.CI_FAILED: frozenset({_S.IMPLEMENTING, _S.CI_RUNNING}) | _OUT,
    _S.REVIEW_PENDING: frozenset(
        {_S.CHANGES_REQUESTED, _S.APPROVED, _S.CI_RUNNING, _S.MERGED}
    ) | _OUT,
    _S.CHANGES_REQUESTED: frozenset({_S.IMPLEMENTING, _S.REVIEW_PENDING}) | _OUT,
    _S.APPROVED: frozenset({_S.MERGED, _S.CI_RUNNING, _S.REVIEW_PENDING}) | _OUT,
    # Leaving escalated is a human action
    _S.ESCALATED: frozenset({_S.IMPLEMENTING, _S.MERGED, _S.CANCELLED}),
    _S.MERGED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({_S.MERGED, _S.CANCELLED, _S.FAILED})

# Most recent fact ids kept on a session for redelivery checks
APPLIED_FACTS_LIMIT = 50


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"ses-{uuid4().hex[:12]}"


@dataclass(frozen=True)
class Session:
    branch: str
    integration_branch: str
    id: str = field(default_factory=new_session_id)
    base_branch: str = "main"
    project_path: str = "."
    issue_number: Optional[int] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    title: str = ""
    prompt: str = ""
    model: Optional[str] = None
    provider: Optional[str] = None

    status: SessionStatus = SessionStatus.CREATED
    ci_retries: int = 0
    review_retries: int = 0
    ci_green: bool = False
    escalated: bool = False
    escalation_reason: Optional[str] = None
    last_transition_reason: Optional[str] = None
    archived: bool = False
    applied_facts: Tuple[str, ...] = ()

    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Counts against the parallel-session limit."""
        return not self.archived and not self.is_terminal and not self.escalated

    def can_transition(self, to_status: SessionStatus) -> bool:
        return to_status in SESSION_TRANSITIONS[self.status]

    def transition(
        self,
        to_status: SessionStatus,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
        **changes: Any,
    ) -> "Session":
        """
        Return a copy moved to ``to_status``.

        Raises:
            TransitionError: if the move is not in SESSION_TRANSITIONS
        """
        check_transition(SESSION_TRANSITIONS, self.status, to_status, "session")
        if to_status == SessionStatus.ESCALATED:
            changes.setdefault("escalated", True)
            changes.setdefault("escalation_reason", reason)
        return replace(
            self,
            status=to_status,
            last_transition_reason=reason,
            last_activity_at=at or utcnow(),
            **changes,
        )

    def with_changes(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    def touch(self, at: Optional[datetime] = None) -> "Session":
        return replace(self, last_activity_at=at or utcnow())

    def has_applied(self, fact_id: str) -> bool:
        return fact_id in self.applied_facts

    def record_fact(self, fact_id: str) -> "Session":
        """Return a copy that remembers ``fact_id`` as applied."""
        if fact_id in self.applied_facts:
            return self
        applied = (self.applied_facts + (fact_id,))[-APPLIED_FACTS_LIMIT:]
        return replace(self, applied_facts=applied)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["last_activity_at"] = self.last_activity_at.isoformat()
        return data
