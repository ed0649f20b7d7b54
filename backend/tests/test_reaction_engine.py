"""
Agentflow - Reaction Engine Tests
=================================

Pure decisions: facts and session snapshots in, next session and actions out.
"""

import pytest

from agentflow.core.config import PipelineConfig, parse_pipeline_config
from agentflow.core.reactions import (
    RULES,
    AutoMerge,
    Escalate,
    FactKind,
    Notify,
    ReactionPolicy,
    RespawnAgent,
    react,
    route,
)
from agentflow.core.sessions import SessionStatus

S = SessionStatus


@pytest.fixture
def policy() -> ReactionPolicy:
    return ReactionPolicy.from_config(PipelineConfig())


def policy_with(**raw) -> ReactionPolicy:
    return ReactionPolicy.from_config(parse_pipeline_config(raw))


class TestRules:
    """Tests for rule table coverage and purity."""

    def test_every_fact_kind_has_a_rule(self):
        assert set(RULES) == set(FactKind)

    def test_same_inputs_same_decision(self, make_fact, make_session, policy):
        fact = make_fact(FactKind.CI_FAILED)
        session = make_session(S.CI_RUNNING)

        assert react(fact, session, policy) == react(fact, session, policy)


class TestRouting:
    """Tests for shortest legal paths between statuses."""

    def test_already_there(self):
        assert route(S.APPROVED, S.APPROVED) == []

    def test_path_skips_outcome_states(self):
        path = route(S.IMPLEMENTING, S.MERGED)

        assert path[-1] == S.MERGED
        assert S.CI_PASSED not in path
        assert S.CI_FAILED not in path

    def test_every_step_is_legal(self):
        from agentflow.core.sessions import SESSION_TRANSITIONS

        current = S.PLANNING
        for status in route(S.PLANNING, S.CHANGES_REQUESTED):
            assert status in SESSION_TRANSITIONS[current]
            current = status

    def test_unreachable_from_terminal(self):
        assert route(S.MERGED, S.IMPLEMENTING) is None


class TestCiFailed:
    """Tests for the CI retry loop."""

    def test_respawns_within_budget(self, make_fact, make_session, policy):
        decision = react(make_fact(FactKind.CI_FAILED), make_session(S.CI_RUNNING), policy)

        assert decision.label == "ci_failed"
        assert decision.session.status == S.IMPLEMENTING
        assert decision.session.ci_retries == 1
        assert decision.session.ci_green is False
        assert decision.actions == (
            RespawnAgent(
                prompt=policy.ci_failed.prompt,
                loop="ci",
                attempt=1,
                max_retries=3,
            ),
        )

    def test_escalates_once_budget_exhausted(self, make_fact, make_session, policy):
        session = make_session(S.CI_RUNNING)
        respawns = 0

        for attempt in range(1, 4):
            decision = react(make_fact(FactKind.CI_FAILED, source_id=str(attempt)), session, policy)
            assert isinstance(decision.actions[0], RespawnAgent)
            respawns += 1
            session = decision.session

        final = react(make_fact(FactKind.CI_FAILED, source_id="4"), session, policy)

        assert respawns == 3
        assert final.session.status == S.ESCALATED
        assert final.session.escalated is True
        assert final.label == "escalated"
        assert len(final.actions) == 1
        assert isinstance(final.actions[0], Escalate)
        assert "retry budget exhausted (3/3)" in final.actions[0].reason

    def test_zero_budget_escalates_immediately(self, make_fact, make_session):
        decision = react(
            make_fact(FactKind.CI_FAILED),
            make_session(S.CI_RUNNING),
            policy_with(sessions={"max_retries_ci": 0}),
        )

        assert decision.session.status == S.ESCALATED

    def test_escalate_policy(self, make_fact, make_session):
        decision = react(
            make_fact(FactKind.CI_FAILED),
            make_session(S.CI_RUNNING),
            policy_with(reactions={"ci_failed": {"action": "escalate"}}),
        )

        assert decision.session.status == S.ESCALATED
        assert decision.session.ci_retries == 0

    def test_notify_policy_records_failure(self, make_fact, make_session):
        decision = react(
            make_fact(FactKind.CI_FAILED),
            make_session(S.CI_RUNNING),
            policy_with(reactions={"ci_failed": {"action": "notify"}}),
        )

        assert decision.session.status == S.CI_FAILED
        assert isinstance(decision.actions[0], Notify)


class TestChangesRequested:
    """Tests for the review loop."""

    def test_triggers_review_loop(self, make_fact, make_session, policy):
        decision = react(
            make_fact(FactKind.REVIEW_CHANGES_REQUESTED, actor="alice"),
            make_session(S.REVIEW_PENDING),
            policy,
        )

        assert decision.label == "review_loop_triggered"
        assert decision.session.status == S.IMPLEMENTING
        assert decision.session.review_retries == 1
        assert decision.actions[0].loop == "review"

    def test_review_budget_is_separate_from_ci(self, make_fact, make_session, policy):
        session = make_session(S.REVIEW_PENDING, ci_retries=3, review_retries=1)

        decision = react(make_fact(FactKind.REVIEW_CHANGES_REQUESTED), session, policy)

        assert decision.session.review_retries == 2
        assert isinstance(decision.actions[0], RespawnAgent)

    def test_review_respawn_clears_ci_green(self, make_fact, make_session, policy):
        session = make_session(S.REVIEW_PENDING, ci_green=True)

        decision = react(make_fact(FactKind.REVIEW_CHANGES_REQUESTED), session, policy)

        assert decision.session.status == S.IMPLEMENTING
        assert decision.session.ci_green is False

    def test_approval_after_review_respawn_waits_for_ci(self, make_fact, make_session):
        policy = policy_with(sessions={"auto_merge": True})
        session = make_session(S.REVIEW_PENDING, ci_green=True)

        respawned = react(
            make_fact(FactKind.REVIEW_CHANGES_REQUESTED, source_id="10"), session, policy,
        ).session
        decision = react(make_fact(FactKind.REVIEW_APPROVED, source_id="11"), respawned, policy)

        assert decision.session.status == S.APPROVED
        assert decision.reason == "waiting for CI"
        assert decision.actions == ()

    def test_escalates_after_review_budget(self, make_fact, make_session, policy):
        session = make_session(S.REVIEW_PENDING, review_retries=2)

        decision = react(make_fact(FactKind.REVIEW_CHANGES_REQUESTED), session, policy)

        assert decision.session.status == S.ESCALATED
        assert isinstance(decision.actions[0], Escalate)


class TestApprovalAndCi:
    """Tests for approval, green CI and merge readiness."""

    def test_approved_waits_for_ci(self, make_fact, make_session, policy):
        decision = react(make_fact(FactKind.REVIEW_APPROVED), make_session(S.REVIEW_PENDING), policy)

        assert decision.session.status == S.APPROVED
        assert decision.reason == "waiting for CI"
        assert decision.actions == ()

    def test_approved_and_green_notifies(self, make_fact, make_session, policy):
        session = make_session(S.REVIEW_PENDING, ci_green=True)

        decision = react(make_fact(FactKind.REVIEW_APPROVED), session, policy)

        assert decision.label == "pr_approved"
        assert decision.actions == (Notify(message=policy.approved_message),)

    def test_ci_passed_on_approved_auto_merges(self, make_fact, make_session):
        policy = policy_with(sessions={"auto_merge": True})

        decision = react(make_fact(FactKind.CI_PASSED), make_session(S.APPROVED), policy)

        assert decision.session.status == S.APPROVED
        assert decision.session.ci_green is True
        assert decision.actions == (AutoMerge(),)

    def test_ci_passed_records_green(self, make_fact, make_session, policy):
        decision = react(make_fact(FactKind.CI_PASSED), make_session(S.CI_RUNNING), policy)

        assert decision.session.status == S.CI_PASSED
        assert decision.session.ci_green is True

    def test_repeat_approval_ignored(self, make_fact, make_session, policy):
        decision = react(make_fact(FactKind.REVIEW_APPROVED), make_session(S.APPROVED), policy)

        assert decision.ignored
        assert decision.reason == "already approved"


class TestLifecycleGuards:
    """Tests for facts against sessions that automation no longer drives."""

    def test_terminal_session_ignored(self, make_fact, make_session, policy):
        decision = react(make_fact(FactKind.CI_FAILED), make_session(S.MERGED), policy)

        assert decision.ignored
        assert decision.reason == "session already merged"

    def test_archived_session_ignored(self, make_fact, make_session, policy):
        decision = react(
            make_fact(FactKind.CI_FAILED),
            make_session(S.CI_RUNNING, archived=True),
            policy,
        )

        assert decision.ignored

    def test_escalated_session_waits_for_human(self, make_fact, make_session, policy):
        session = make_session(S.CI_RUNNING).transition(S.ESCALATED, reason="manual")

        decision = react(make_fact(FactKind.CI_FAILED), session, policy)

        assert decision.ignored
        assert decision.session == session

    def test_merge_closes_escalated_session(self, make_fact, make_session, policy):
        session = make_session(S.CI_RUNNING).transition(S.ESCALATED, reason="manual")

        decision = react(make_fact(FactKind.PR_MERGED), session, policy)

        assert decision.session.status == S.MERGED
        assert decision.label == "pr_merged"


class TestInactivity:
    """Tests for stuck-session handling."""

    def test_escalates_by_default(self, make_fact, make_session, policy):
        fact = make_fact(FactKind.SESSION_INACTIVE, details={"idle_minutes": 45})

        decision = react(fact, make_session(S.IMPLEMENTING), policy)

        assert decision.label == "agent_stuck"
        assert decision.session.status == S.ESCALATED
        assert "(idle 45 min)" in decision.actions[0].reason

    def test_notify_touches_session(self, make_fact, make_session):
        policy = policy_with(reactions={"agent_stuck": {"action": "notify"}})
        session = make_session(S.IMPLEMENTING)
        fact = make_fact(FactKind.SESSION_INACTIVE)

        decision = react(fact, session, policy)

        assert decision.session.status == S.IMPLEMENTING
        assert decision.session.last_activity_at == fact.observed_at
        assert isinstance(decision.actions[0], Notify)
