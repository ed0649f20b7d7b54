"""
Agentflow - HTTP API Tests
==========================

Webhook ingress, session and pipeline endpoints over ASGI.
"""

import asyncio

import pytest
from httpx import AsyncClient

from agentflow.core.merge import MergeRequest
from agentflow.core.sessions import SessionStatus

BRANCH = "integration/issue/42/fix-login"


def check_suite(conclusion: str, suite_id: int = 901, branch: str = BRANCH) -> dict:
    return {
        "action": "completed",
        "check_suite": {
            "id": suite_id,
            "head_branch": branch,
            "head_sha": "deadbeef",
            "conclusion": conclusion,
            "pull_requests": [{"number": 7}],
        },
    }


class TestHealth:
    """Tests for the health and root endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "memory"
        assert data["workflow_runner"] == "enabled"

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["health"] == "/health"


class TestWebhookAuth:
    """Tests for signature enforcement on POST /webhooks/{provider}."""

    async def test_missing_signature(self, client, encode, github_headers):
        body = encode(check_suite("failure"))

        response = await client.post(
            "/webhooks/github",
            content=body,
            headers=github_headers("check_suite", body, signature=None),
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Missing X-Hub-Signature-256 header"}

    async def test_invalid_signature(self, client, encode, github_headers):
        body = encode(check_suite("failure"))

        response = await client.post(
            "/webhooks/github",
            content=body,
            headers=github_headers("check_suite", body, signature="sha256=00"),
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}

    async def test_rejected_request_has_no_side_effects(self, client, container, dispatcher, encode, github_headers):
        body = encode(check_suite("failure"))

        await client.post(
            "/webhooks/github",
            content=body,
            headers=github_headers("check_suite", body, signature="sha256=bad"),
        )

        assert container.store.list() == []
        dispatcher.dispatch.assert_not_awaited()

    async def test_invalid_json(self, client, github_headers):
        body = b"{not json"

        response = await client.post(
            "/webhooks/github", content=body, headers=github_headers("check_suite", body),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}

    async def test_unknown_provider(self, client, github_headers):
        response = await client.post(
            "/webhooks/gitea", content=b"{}", headers=github_headers("push", b"{}"),
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Unknown webhook provider: gitea"}


class TestWebhookUnsigned:
    """Tests for the explicit no-secret opt-out."""

    @pytest.fixture
    def config_overrides(self):
        return {"webhook_secret": ""}

    async def test_accepts_without_signature(self, client, encode, github_headers):
        body = encode(check_suite("success"))

        response = await client.post(
            "/webhooks/github",
            content=body,
            headers=github_headers("check_suite", body, signature=None),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processed"


class TestWebhookProcessing:
    """Tests for authenticated deliveries."""

    async def test_ci_failure_processed(self, client, dispatcher, encode, github_headers):
        body = encode(check_suite("failure"))

        response = await client.post(
            "/webhooks/github", content=body, headers=github_headers("check_suite", body),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["action"] == "ci_failed"
        assert data["branch"] == "issue/42/fix-login"
        assert data["pr_number"] == 7
        assert data["actions"][0]["action"] == "respawn_agent"
        assert dispatcher.dispatch.await_count == 1

    async def test_redelivery_ignored(self, client, dispatcher, encode, github_headers):
        body = encode(check_suite("failure"))
        headers = github_headers("check_suite", body)

        await client.post("/webhooks/github", content=body, headers=headers)
        response = await client.post("/webhooks/github", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert dispatcher.dispatch.await_count == 1

    async def test_out_of_scope_branch(self, client, container, encode, github_headers):
        body = encode(check_suite("failure", branch="feature/x"))

        response = await client.post(
            "/webhooks/github", content=body, headers=github_headers("check_suite", body),
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "reason": "not an integration branch"}
        assert container.store.list() == []

    async def test_ping(self, client, encode, github_headers):
        body = encode({"zen": "Keep it logically awesome."})

        response = await client.post("/webhooks/github", content=body, headers=github_headers("ping", body))

        assert response.json() == {"status": "ignored", "reason": "ping"}

    async def test_retry_budget_over_http(self, client, container, encode, github_headers):
        statuses = []
        for suite_id in range(1, 5):
            body = encode(check_suite("failure", suite_id=suite_id))
            response = await client.post(
                "/webhooks/github", content=body, headers=github_headers("check_suite", body),
            )
            statuses.append(response.json()["action"])

        assert statuses == ["ci_failed", "ci_failed", "ci_failed", "escalated"]
        assert container.store.list()[0].status == SessionStatus.ESCALATED


class TestSessionsApi:
    """Tests for /api/v1/sessions."""

    async def test_start_and_get(self, client, dispatcher):
        response = await client.post(
            "/api/v1/sessions/start", json={"title": "Fix login", "issue_number": 42},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["session"]["status"] == "planning"
        assert data["session"]["branch"] == "issue/42/fix-login"
        assert data["dispatch"]["ok"] is True

        session_id = data["session"]["id"]
        fetched = await client.get(f"/api/v1/sessions/{session_id}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == session_id

    async def test_start_requires_work(self, client):
        response = await client.post("/api/v1/sessions/start", json={})

        assert response.status_code == 422

    async def test_duplicate_issue_conflicts(self, client):
        await client.post("/api/v1/sessions/start", json={"title": "a", "issue_number": 1})

        response = await client.post("/api/v1/sessions/start", json={"title": "b", "issue_number": 1})

        assert response.status_code == 409

    async def test_list(self, client):
        await client.post("/api/v1/sessions/start", json={"prompt": "one"})
        await client.post("/api/v1/sessions/start", json={"prompt": "two"})

        response = await client.get("/api/v1/sessions")

        data = response.json()
        assert data["total"] == 2
        assert data["active"] == 2

    async def test_get_unknown(self, client):
        response = await client.get("/api/v1/sessions/ses-nope")

        assert response.status_code == 404

    async def test_escalate_resume_cancel(self, client):
        created = await client.post("/api/v1/sessions/start", json={"prompt": "x"})
        session_id = created.json()["session"]["id"]

        escalated = await client.post(
            f"/api/v1/sessions/{session_id}/escalate", json={"reason": "help"},
        )
        resumed = await client.post(f"/api/v1/sessions/{session_id}/resume")
        cancelled = await client.post(f"/api/v1/sessions/{session_id}/cancel")
        again = await client.post(f"/api/v1/sessions/{session_id}/cancel")

        assert escalated.json()["session"]["escalation_reason"] == "help"
        assert resumed.json()["session"]["status"] == "implementing"
        assert cancelled.json()["session"]["status"] == "cancelled"
        assert again.status_code == 409

    async def test_archive(self, client):
        created = await client.post("/api/v1/sessions/start", json={"prompt": "x"})
        session_id = created.json()["session"]["id"]

        response = await client.delete(f"/api/v1/sessions/{session_id}")

        assert response.status_code == 200
        assert response.json()["archived"] is True
        listed = await client.get("/api/v1/sessions")
        assert listed.json()["total"] == 0


class TestPipelineApi:
    """Tests for /api/v1/pipeline."""

    async def test_run_and_poll(self, client):
        response = await client.post(
            "/api/v1/pipeline/run",
            json={"branch": "feature/a", "worktree_path": "/tmp/wt", "request_id": "pipe-api"},
        )

        assert response.status_code == 202
        assert response.json()["pipeline_branch"] == "pipeline/feature/a"

        for _ in range(50):
            state = (await client.get("/api/v1/pipeline/pipe-api")).json()
            if state["status"] not in ("accepted", "running"):
                break
            await asyncio.sleep(0.01)

        assert state["status"] == "approved"
        assert {r["agent"] for r in state["agent_results"]} == {"tests", "style"}

        events = (await client.get("/api/v1/pipeline/pipe-api/events")).json()
        assert events[0]["event_type"] == "pipeline.created"

    async def test_unknown_agent(self, client):
        response = await client.post(
            "/api/v1/pipeline/run",
            json={"branch": "a", "worktree_path": "/w", "agents": ["astrology"]},
        )

        assert response.status_code == 409

    async def test_unknown_pipeline(self, client):
        assert (await client.get("/api/v1/pipeline/pipe-none")).status_code == 404
        assert (await client.post("/api/v1/pipeline/pipe-none/stop")).status_code == 404


class TestIntegrationQueueApi:
    """Tests for /api/v1/integration."""

    async def test_empty_queue(self, client):
        response = await client.get("/api/v1/integration/queue")

        assert response.status_code == 200
        assert response.json() == {"pending": [], "held": [], "in_flight": [], "merged": []}

    async def test_conflict_report_requeues_dispatched_merge(self, client, container, dispatcher):
        await container.merge_scheduler.enqueue(MergeRequest(BRANCH, "main"))

        response = await client.post(
            "/api/v1/integration/report",
            json={"branch": BRANCH, "outcome": "conflict", "detail": "conflict in app.py"},
        )

        assert response.status_code == 200
        in_flight = response.json()["in_flight"]
        assert [r["branch"] for r in in_flight] == [BRANCH]
        assert in_flight[0]["requeues"] == 1
        assert dispatcher.dispatch.await_count == 2

    async def test_failure_report_frees_target(self, client, container):
        await container.merge_scheduler.enqueue(MergeRequest(BRANCH, "main"))
        await container.merge_scheduler.enqueue(MergeRequest("integration/issue/43/other", "main"))

        response = await client.post(
            "/api/v1/integration/report",
            json={"branch": BRANCH, "outcome": "failed", "detail": "push rejected"},
        )

        assert response.status_code == 200
        assert [r["branch"] for r in response.json()["in_flight"]] == ["integration/issue/43/other"]

    async def test_report_without_merge_in_flight(self, client):
        response = await client.post(
            "/api/v1/integration/report", json={"branch": BRANCH, "outcome": "conflict"},
        )

        assert response.status_code == 404
        assert response.json()["detail"] == f"No merge in flight for {BRANCH}"

    async def test_report_rejects_unknown_outcome(self, client):
        response = await client.post(
            "/api/v1/integration/report", json={"branch": BRANCH, "outcome": "exploded"},
        )

        assert response.status_code == 422
