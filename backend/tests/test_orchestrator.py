"""
Agentflow - Session Orchestrator Tests
======================================

Facts through the single writer: dedupe, adoption, retry loops, action
execution and human lifecycle actions.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from agentflow.api.deps import ServiceContainer, build_container
from agentflow.core.config import parse_pipeline_config, settings
from agentflow.core.events import EventType
from agentflow.core.orchestrator import (
    ParallelLimitError,
    SessionConflictError,
    SessionOrchestrator,
    StartSessionRequest,
)
from agentflow.core.reactions import FactKind
from agentflow.core.sessions import SessionNotFoundError, SessionStatus, TransitionError
from agentflow.core.workflows import WorkflowDispatchError

S = SessionStatus


@pytest.fixture
def orchestrator(container: ServiceContainer) -> SessionOrchestrator:
    return container.orchestrator


@pytest.fixture
def store(container: ServiceContainer):
    return container.store


def workflows_dispatched(dispatcher: AsyncMock) -> list[str]:
    return [call.args[0] for call in dispatcher.dispatch.call_args_list]


def event_types(container: ServiceContainer, request_id: str) -> list[EventType]:
    return [e.event_type for e in container.bus.get_events(request_id)]


class TestFactIntake:
    """Tests for dedupe, scoping and adoption."""

    async def test_duplicate_fact_dispatches_once(self, orchestrator, dispatcher, make_fact):
        fact = make_fact(FactKind.CI_FAILED, source_id="suite-1:failure")

        first = await orchestrator.handle_fact(fact)
        second = await orchestrator.handle_fact(fact)

        assert first.status == "processed"
        assert second.status == "ignored"
        assert second.reason == "duplicate fact already processed"
        assert dispatcher.dispatch.await_count == 1

    async def test_concurrent_duplicates_dispatch_once(self, orchestrator, dispatcher, make_fact):
        fact = make_fact(FactKind.CI_FAILED)

        outcomes = await asyncio.gather(
            orchestrator.handle_fact(fact),
            orchestrator.handle_fact(fact),
        )

        assert sorted(o.status for o in outcomes) == ["ignored", "processed"]
        assert dispatcher.dispatch.await_count == 1

    async def test_redelivery_after_restart_keeps_retry_budget(
        self, orchestrator, container, dispatcher, store, make_fact,
    ):
        fact = make_fact(FactKind.CI_FAILED, source_id="suite-1:failure")
        first = await orchestrator.handle_fact(fact)
        restarted = SessionOrchestrator(
            container.config, store, container.bus, dispatcher, container.notifier,
        )

        again = await restarted.handle_fact(fact)

        assert again.status == "ignored"
        assert again.reason == "duplicate fact already processed"
        assert store.require(first.session_id).ci_retries == 1
        assert dispatcher.dispatch.await_count == 1

    async def test_concurrent_facts_apply_in_turn(self, orchestrator, store, make_fact):
        await asyncio.gather(
            orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, source_id="a")),
            orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, source_id="b")),
        )

        session = store.by_branch("issue/42/fix-login")
        assert session.ci_retries == 2

    async def test_non_integration_branch_ignored(self, orchestrator, store, dispatcher, make_fact):
        outcome = await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, branch="feature/x"))

        assert outcome.status == "ignored"
        assert outcome.reason == "not an integration branch"
        assert store.list() == []
        dispatcher.dispatch.assert_not_awaited()

    async def test_unknown_branch_is_adopted(self, orchestrator, container, store, make_fact):
        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))

        session = store.require(outcome.session_id)
        assert session.branch == "issue/42/fix-login"
        assert session.status == S.APPROVED
        assert EventType.SESSION_ADOPTED in event_types(container, session.id)


class TestRetryLoops:
    """Tests for respawn dispatch and budget escalation."""

    async def test_ci_failure_dispatches_fix_workflow(self, orchestrator, dispatcher, make_fact):
        outcome = await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED))

        assert outcome.action == "ci_failed"
        assert outcome.actions[0].ok is True
        workflow, payload = dispatcher.dispatch.call_args.args
        assert workflow == "ci-fix-loop"
        assert payload["sessionId"] == outcome.session_id
        assert payload["branch"] == "issue/42/fix-login"
        assert payload["integrationBranch"] == "integration/issue/42/fix-login"
        assert payload["prNumber"] == 7
        assert payload["attempt"] == 1
        assert payload["maxRetries"] == 3

    async def test_fourth_failure_escalates(self, orchestrator, dispatcher, notifier, store, make_fact):
        outcomes = [
            await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, source_id=str(n)))
            for n in range(1, 5)
        ]

        assert [o.action for o in outcomes] == ["ci_failed", "ci_failed", "ci_failed", "escalated"]
        assert workflows_dispatched(dispatcher) == ["ci-fix-loop"] * 3
        notifier.notify_escalation.assert_awaited_once()
        session = store.require(outcomes[-1].session_id)
        assert session.status == S.ESCALATED
        assert session.ci_retries == 3

    async def test_facts_after_escalation_ignored(self, orchestrator, dispatcher, make_fact):
        for n in range(1, 5):
            await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, source_id=str(n)))

        outcome = await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED, source_id="5"))

        assert outcome.status == "ignored"
        assert dispatcher.dispatch.await_count == 3

    async def test_changes_requested_starts_review_loop(self, orchestrator, container, dispatcher, make_fact):
        outcome = await orchestrator.handle_fact(
            make_fact(FactKind.REVIEW_CHANGES_REQUESTED, actor="reviewer")
        )

        assert outcome.action == "review_loop_triggered"
        assert workflows_dispatched(dispatcher) == ["pr-review-loop"]
        types = event_types(container, outcome.session_id)
        assert EventType.REVIEW_LOOP_STARTED in types
        assert EventType.REACTION_AGENT_RESPAWNED in types

    async def test_dispatch_failure_keeps_transition(self, orchestrator, container, dispatcher, store, make_fact):
        dispatcher.dispatch.side_effect = WorkflowDispatchError("runner unreachable")

        outcome = await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED))

        assert outcome.status == "processed"
        assert outcome.actions[0].ok is False
        assert "runner unreachable" in outcome.actions[0].error
        session = store.require(outcome.session_id)
        assert session.status == S.IMPLEMENTING
        assert session.ci_retries == 1
        assert EventType.REACTION_ACTION_FAILED in event_types(container, session.id)


class TestMergeFlow:
    """Tests for approval, auto-merge and merged PRs."""

    @pytest.fixture
    def container(self, dispatcher, notifier, executor) -> ServiceContainer:
        config = parse_pipeline_config({"sessions": {"auto_merge": True}})
        return build_container(
            settings, config, dispatcher=dispatcher, executor=executor, notifier=notifier,
        )

    async def test_approved_and_green_queues_merge(self, orchestrator, container, dispatcher, make_fact):
        await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED))
        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))

        assert outcome.action == "pr_approved"
        assert outcome.actions[0].action == "auto_merge"
        assert outcome.actions[0].detail == "queued #1"
        assert "merge-integration" in workflows_dispatched(dispatcher)
        dispatcher.push_event.assert_awaited_with(
            "pr.approved", {"prNumber": 7, "branch": "issue/42/fix-login"},
        )
        in_flight = container.merge_scheduler.snapshot()["in_flight"]
        assert [r["branch"] for r in in_flight] == ["integration/issue/42/fix-login"]

    async def test_merged_pr_closes_session_and_queue(self, orchestrator, container, store, make_fact):
        await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED))
        await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))

        outcome = await orchestrator.handle_fact(make_fact(FactKind.PR_MERGED, source_id="abc123"))

        assert outcome.action == "pr_merged"
        assert store.require(outcome.session_id).status == S.MERGED
        snapshot = container.merge_scheduler.snapshot()
        assert snapshot["in_flight"] == []
        assert snapshot["merged"] == ["integration/issue/42/fix-login"]
        assert EventType.INTEGRATION_PR_MERGED in event_types(container, outcome.session_id)

    async def test_approval_before_ci_does_not_merge(self, orchestrator, container, make_fact):
        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))

        assert outcome.reason == "waiting for CI"
        assert outcome.actions == []
        assert container.merge_scheduler.snapshot()["pending"] == []

    async def test_approval_after_review_loop_waits_for_new_ci(
        self, orchestrator, container, dispatcher, make_fact,
    ):
        await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED, source_id="ci-1"))
        await orchestrator.handle_fact(make_fact(FactKind.REVIEW_CHANGES_REQUESTED, source_id="r-1"))

        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED, source_id="r-2"))

        assert outcome.reason == "waiting for CI"
        assert outcome.actions == []
        assert "merge-integration" not in workflows_dispatched(dispatcher)
        assert container.merge_scheduler.snapshot()["in_flight"] == []

        merged = await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED, source_id="ci-2"))

        assert merged.actions[0].action == "auto_merge"

    async def test_cancel_releases_in_flight_merge(self, orchestrator, container, make_fact):
        await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED))
        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))

        await orchestrator.cancel_session(outcome.session_id)

        assert container.merge_scheduler.snapshot()["in_flight"] == []
        assert EventType.MERGE_ABANDONED in event_types(container, "integration/issue/42/fix-login")

    async def test_repeated_merge_conflict_escalates_session(
        self, orchestrator, container, dispatcher, notifier, store, make_fact,
    ):
        await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED))
        outcome = await orchestrator.handle_fact(make_fact(FactKind.REVIEW_APPROVED))
        scheduler = container.merge_scheduler
        branch = "integration/issue/42/fix-login"

        await scheduler.report_conflict(branch, "conflict in app.py")

        assert workflows_dispatched(dispatcher).count("merge-integration") == 2
        assert store.require(outcome.session_id).status == S.APPROVED

        await scheduler.report_conflict(branch, "conflict in app.py")

        session = store.require(outcome.session_id)
        assert session.status == S.ESCALATED
        assert "conflict in app.py" in session.escalation_reason
        assert scheduler.snapshot()["in_flight"] == []
        notifier.notify_escalation.assert_awaited_once()


class TestSessionLifecycle:
    """Tests for starting, escalating, cancelling and resuming sessions."""

    async def test_start_session_dispatches_implement(self, orchestrator, dispatcher):
        session, outcome = await orchestrator.start_session(
            StartSessionRequest(title="Fix login bug", issue_number=42)
        )

        assert session.status == S.PLANNING
        assert session.branch == "issue/42/fix-login-bug"
        assert session.integration_branch == "integration/issue/42/fix-login-bug"
        assert outcome.ok is True
        workflow, payload = dispatcher.dispatch.call_args.args
        assert workflow == "implement-issue"
        assert payload["issueNumber"] == 42
        assert payload["resume"] is False

    async def test_prompt_session_gets_generated_branch(self, orchestrator):
        session, _ = await orchestrator.start_session(StartSessionRequest(prompt="Add dark mode"))

        assert session.branch.startswith("prompt/")
        assert session.branch.endswith("-add-dark-mode")

    async def test_same_issue_conflicts(self, orchestrator):
        await orchestrator.start_session(StartSessionRequest(title="a", issue_number=5))

        with pytest.raises(SessionConflictError):
            await orchestrator.start_session(StartSessionRequest(title="b", issue_number=5))

    async def test_parallel_limit(self, dispatcher, notifier, executor):
        config = parse_pipeline_config({"tracker": {"max_parallel": 1}})
        orchestrator = build_container(
            settings, config, dispatcher=dispatcher, executor=executor, notifier=notifier,
        ).orchestrator
        await orchestrator.start_session(StartSessionRequest(prompt="one"))

        with pytest.raises(ParallelLimitError):
            await orchestrator.start_session(StartSessionRequest(prompt="two"))

    async def test_dispatch_failure_still_creates_session(self, orchestrator, dispatcher, store):
        dispatcher.dispatch.side_effect = WorkflowDispatchError("down")

        session, outcome = await orchestrator.start_session(StartSessionRequest(prompt="x"))

        assert outcome.ok is False
        assert store.require(session.id).status == S.PLANNING

    async def test_escalate_then_resume(self, orchestrator, notifier, dispatcher):
        session, _ = await orchestrator.start_session(StartSessionRequest(prompt="x"))

        escalated = await orchestrator.escalate_session(session.id, "needs a human")
        resumed, outcome = await orchestrator.resume_session(session.id)

        assert escalated.status == S.ESCALATED
        notifier.notify_escalation.assert_awaited_once_with(session.id, session.branch, "needs a human")
        assert resumed.status == S.IMPLEMENTING
        assert resumed.escalated is False
        assert outcome.ok is True
        assert dispatcher.dispatch.call_args.args[1]["resume"] is True

    async def test_resume_requires_escalation(self, orchestrator):
        session, _ = await orchestrator.start_session(StartSessionRequest(prompt="x"))
        await orchestrator.cancel_session(session.id)

        with pytest.raises(TransitionError):
            await orchestrator.resume_session(session.id)

    async def test_cancelled_session_ignores_facts(self, orchestrator, dispatcher, make_fact):
        outcome = await orchestrator.handle_fact(make_fact(FactKind.CI_PASSED))
        await orchestrator.cancel_session(outcome.session_id)
        dispatcher.dispatch.reset_mock()

        late = await orchestrator.handle_fact(make_fact(FactKind.CI_FAILED))

        assert late.status == "ignored"
        assert late.reason == "session already cancelled"
        dispatcher.dispatch.assert_not_awaited()

    async def test_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.cancel_session("ses-missing")

    async def test_archive(self, orchestrator, store):
        session, _ = await orchestrator.start_session(StartSessionRequest(prompt="x"))

        archived = await orchestrator.archive_session(session.id)

        assert archived.archived is True
        assert store.list() == []
