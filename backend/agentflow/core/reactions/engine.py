"""
Agentflow - Reaction Engine
===========================

Pure decision step: ``react(fact, session, policy)`` returns the session's
next value and the actions to carry out. No I/O happens here; the
orchestrator persists the new session and executes the actions.

Given the same fact and the same session snapshot the decision is always
the same. Duplicate deliveries are filtered before this point by fact id.

Retry budgets:
- ``ci.failed`` respawns an agent while ``ci_retries < max``; the first
  failure past the budget escalates with exactly one Escalate action.
- ``review.changes_requested`` does the same with ``review_retries``.
"""

from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from agentflow.core.reactions.actions import (
    Action,
    AutoMerge,
    Escalate,
    Notify,
    RespawnAgent,
)
from agentflow.core.reactions.facts import Fact, FactKind
from agentflow.core.reactions.policy import ReactionPolicy, RetryPolicy
from agentflow.core.sessions.session import (
    SESSION_TRANSITIONS,
    Session,
    SessionStatus,
)

_S = SessionStatus


@dataclass(frozen=True)
class Decision:
    status: str  # "processed" | "ignored"
    session: Session
    actions: Tuple[Action, ...] = ()
    reason: str = ""
    label: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self.status == "ignored"


def ignore(session: Session, reason: str) -> Decision:
    return Decision(status="ignored", session=session, reason=reason)


# ==========================================================================
# Routing
# ==========================================================================

# States a route may pass through without claiming something that did not happen
_NO_PASS_THROUGH = frozenset({
    _S.CI_PASSED,
    _S.CI_FAILED,
    _S.MERGED,
    _S.ESCALATED,
    _S.CANCELLED,
    _S.FAILED,
})


def route(from_status: SessionStatus, to_status: SessionStatus) -> Optional[list[SessionStatus]]:
    """
    Shortest legal path of statuses after ``from_status`` ending at ``to_status``.

    Returns [] when already there and None when unreachable.
    """
    if from_status == to_status:
        return []

    previous: Dict[SessionStatus, SessionStatus] = {}
    queue = deque([from_status])
    while queue:
        current = queue.popleft()
        for nxt in sorted(SESSION_TRANSITIONS[current], key=lambda s: s.value):
            if nxt in previous or nxt == from_status:
                continue
            previous[nxt] = current
            if nxt == to_status:
                path = [nxt]
                while previous[path[-1]] != from_status:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            if nxt not in _NO_PASS_THROUGH:
                queue.append(nxt)
    return None


def _walk(session: Session, path: list[SessionStatus], fact: Fact, reason: str) -> Session:
    for status in path:
        session = session.transition(status, reason=reason, at=fact.observed_at)
    return session


def _escalate(session: Session, fact: Fact, reason: str) -> Decision:
    escalated = session.transition(_S.ESCALATED, reason=reason, at=fact.observed_at)
    return Decision(
        status="processed",
        session=escalated,
        actions=(Escalate(reason=reason),),
        reason=reason,
        label="escalated",
    )


def _approved_and_green(session: Session, policy: ReactionPolicy, reason: str) -> Decision:
    if policy.auto_merge:
        action: Action = AutoMerge()
    else:
        action = Notify(message=policy.approved_message)
    return Decision(
        status="processed",
        session=session,
        actions=(action,),
        reason=reason,
        label="pr_approved",
    )


# ==========================================================================
# Rules
# ==========================================================================

def _retry_loop(
    fact: Fact,
    session: Session,
    retry: RetryPolicy,
    failed_status: SessionStatus,
    counter: str,
    loop: str,
    label: str,
    describe: str,
) -> Decision:
    path = route(session.status, failed_status)
    if path is None:
        return ignore(session, f"{describe} not applicable in status {session.status.value}")

    attempts = getattr(session, counter)
    changes = {"ci_green": False} if loop == "ci" else {}

    if retry.action == "escalate":
        reason = f"{describe} on {session.branch}; policy escalates"
        return _escalate(session.with_changes(**changes), fact, reason)

    if retry.action == "notify":
        moved = _walk(session.with_changes(**changes), path, fact, describe)
        return Decision(
            status="processed",
            session=moved,
            actions=(Notify(message=f"{describe} on {session.branch}"),),
            reason=describe,
            label=label,
        )

    if attempts >= retry.max_retries:
        reason = (
            f"{describe} on {session.branch}: retry budget exhausted "
            f"({attempts}/{retry.max_retries})"
        )
        return _escalate(session.with_changes(**changes), fact, reason)

    # A respawn produces a new commit whose CI has not run yet
    moved = _walk(
        session.with_changes(**{counter: attempts + 1, "ci_green": False}),
        path + [_S.IMPLEMENTING],
        fact,
        f"{describe}; retry {attempts + 1}/{retry.max_retries}",
    )
    return Decision(
        status="processed",
        session=moved,
        actions=(
            RespawnAgent(
                prompt=retry.prompt,
                loop=loop,  # type: ignore[arg-type]
                attempt=attempts + 1,
                max_retries=retry.max_retries,
            ),
        ),
        reason=f"retry {attempts + 1}/{retry.max_retries}",
        label=label,
    )


def _on_ci_failed(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    return _retry_loop(
        fact,
        session,
        policy.ci_failed,
        failed_status=_S.CI_FAILED,
        counter="ci_retries",
        loop="ci",
        label="ci_failed",
        describe="CI failed",
    )


def _on_changes_requested(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    return _retry_loop(
        fact,
        session,
        policy.changes_requested,
        failed_status=_S.CHANGES_REQUESTED,
        counter="review_retries",
        loop="review",
        label="review_loop_triggered",
        describe="changes requested",
    )


def _on_ci_passed(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    if session.status == _S.APPROVED:
        green = session.with_changes(ci_green=True).touch(fact.observed_at)
        return _approved_and_green(green, policy, "CI passed on approved PR")

    path = route(session.status, _S.CI_PASSED)
    if path is None:
        return ignore(session, f"CI result not applicable in status {session.status.value}")

    moved = _walk(session.with_changes(ci_green=True), path, fact, "CI passed")
    return Decision(status="processed", session=moved, reason="CI passed", label="ci_passed")


def _on_approved(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    if session.status == _S.APPROVED:
        return ignore(session, "already approved")

    path = route(session.status, _S.APPROVED)
    if path is None:
        return ignore(session, f"approval not applicable in status {session.status.value}")

    reviewer = f" by {fact.actor}" if fact.actor else ""
    moved = _walk(session, path, fact, f"approved{reviewer}")
    if not moved.ci_green:
        return Decision(
            status="processed",
            session=moved,
            reason="waiting for CI",
            label="pr_approved",
        )
    return _approved_and_green(moved, policy, "approved and CI green")


def _on_merged(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    path = route(session.status, _S.MERGED)
    if path is None:
        return ignore(session, f"merge not applicable in status {session.status.value}")
    moved = _walk(session, path, fact, "pull request merged")
    return Decision(status="processed", session=moved, reason="merged", label="pr_merged")


def _on_inactive(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    idle = fact.details.get("idle_minutes")
    suffix = f" (idle {idle} min)" if idle is not None else ""
    if policy.stuck_action == "escalate":
        decision = _escalate(session, fact, f"{policy.stuck_message}{suffix}")
        return Decision(
            status=decision.status,
            session=decision.session,
            actions=decision.actions,
            reason=decision.reason,
            label="agent_stuck",
        )
    return Decision(
        status="processed",
        session=session.touch(fact.observed_at),
        actions=(Notify(message=f"{policy.stuck_message}{suffix}"),),
        reason="agent stuck",
        label="agent_stuck",
    )


Rule = Callable[[Fact, Session, ReactionPolicy], Decision]

RULES: Dict[FactKind, Rule] = {
    FactKind.CI_FAILED: _on_ci_failed,
    FactKind.CI_PASSED: _on_ci_passed,
    FactKind.REVIEW_CHANGES_REQUESTED: _on_changes_requested,
    FactKind.REVIEW_APPROVED: _on_approved,
    FactKind.PR_MERGED: _on_merged,
    FactKind.SESSION_INACTIVE: _on_inactive,
}

_unhandled = set(FactKind) - set(RULES)
if _unhandled:
    raise RuntimeError(f"No reaction rule for: {sorted(k.value for k in _unhandled)}")


def react(fact: Fact, session: Session, policy: ReactionPolicy) -> Decision:
    """Decide the session's next value and actions for one fact."""
    if session.archived:
        return ignore(session, "session archived")
    if session.is_terminal:
        return ignore(session, f"session already {session.status.value}")
    if session.status == _S.ESCALATED and fact.kind != FactKind.PR_MERGED:
        return ignore(session, "session escalated; awaiting human action")
    return RULES[fact.kind](fact, session, policy)
