"""
Agentflow - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import asyncio
import hashlib
import hmac
import json
from collections.abc import AsyncGenerator
from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agentflow.api.deps import ServiceContainer, build_container
from agentflow.api.main import create_app
from agentflow.core.config import PipelineConfig, parse_pipeline_config, settings
from agentflow.core.database import Base, create_session_factory, init_db
from agentflow.core.events import EventBus, MemoryEventSink
from agentflow.core.notifications import Notifier
from agentflow.core.pipeline import AgentContext, AgentResult, AgentRole, AgentStatus
from agentflow.core.reactions import Fact, FactKind
from agentflow.core.sessions import Session, SessionStatus, SessionStore
from agentflow.core.workflows import WorkflowRun

WEBHOOK_SECRET = "test-webhook-secret"
INTEGRATION_BRANCH = "integration/issue/42/fix-login"


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Provide a session factory over a clean in-memory database.

    Creates all tables before test, drops after.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(bind=engine)

    yield create_session_factory(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


# ==========================================================================
# Config Fixtures
# ==========================================================================

@pytest.fixture
def config_overrides() -> Dict[str, Any]:
    """Override in a test module to change the pipeline config."""
    return {}


@pytest.fixture
def pipeline_config(config_overrides: Dict[str, Any]) -> PipelineConfig:
    raw: Dict[str, Any] = {"webhook_secret": WEBHOOK_SECRET}
    raw.update(config_overrides)
    return parse_pipeline_config(raw)


# ==========================================================================
# Collaborator Fixtures
# ==========================================================================

@pytest.fixture
def bus() -> EventBus:
    return EventBus(sink=MemoryEventSink())


@pytest.fixture
def store(pipeline_config: PipelineConfig) -> SessionStore:
    return SessionStore(
        integration_prefix=pipeline_config.branch.integration_prefix,
        base_branch=pipeline_config.branch.main,
    )


@pytest.fixture
def dispatcher() -> AsyncMock:
    """Workflow runner double: every dispatch returns a fresh run id."""
    mock = AsyncMock()
    mock.enabled = True
    counter = iter(range(1, 10_000))

    async def dispatch(workflow: str, input: Dict[str, Any]) -> WorkflowRun:
        return WorkflowRun(workflow=workflow, run_id=f"run-{next(counter)}")

    mock.dispatch.side_effect = dispatch
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=Notifier)


Outcome = Union[AgentStatus, Exception, Callable[[AgentContext], Any]]


class ScriptedExecutor:
    """
    Agent executor double.

    ``script`` maps agent name to the outcomes of its successive calls; the
    last outcome repeats. An Exception outcome is raised. Every call is
    recorded as (agent, context).
    """

    def __init__(self, script: Optional[Dict[str, List[Outcome]]] = None, delay: float = 0):
        self.script = script or {}
        self.delay = delay
        self.calls: List[tuple[str, AgentContext]] = []

    def calls_for(self, agent: str) -> List[AgentContext]:
        return [context for name, context in self.calls if name == agent]

    async def execute(
        self,
        role: AgentRole,
        context: AgentContext,
        cancel: Optional[asyncio.Event] = None,
    ) -> AgentResult:
        self.calls.append((role.name, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcomes = self.script.get(role.name, [AgentStatus.PASSED])
        outcome = outcomes[min(len(self.calls_for(role.name)) - 1, len(outcomes) - 1)]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            outcome = outcome(context)
        return AgentResult(agent=role.name, status=outcome)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


# ==========================================================================
# Builders
# ==========================================================================

@pytest.fixture
def make_fact() -> Callable[..., Fact]:
    def _make(
        kind: FactKind,
        source_id: str = "1",
        branch: str = INTEGRATION_BRANCH,
        pr_number: Optional[int] = 7,
        **kwargs: Any,
    ) -> Fact:
        return Fact(kind=kind, branch=branch, pr_number=pr_number, source_id=source_id, **kwargs)

    return _make


@pytest.fixture
def make_session() -> Callable[..., Session]:
    def _make(status: SessionStatus = SessionStatus.PR_CREATED, **kwargs: Any) -> Session:
        kwargs.setdefault("branch", "issue/42/fix-login")
        kwargs.setdefault("integration_branch", f"integration/{kwargs['branch']}")
        kwargs.setdefault("pr_number", 7)
        return Session(status=status, **kwargs)

    return _make


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def github_headers() -> Callable[..., Dict[str, str]]:
    def _headers(event: str, body: bytes, signature: Optional[str] = "auto") -> Dict[str, str]:
        headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
        if signature == "auto":
            headers["X-Hub-Signature-256"] = sign(body)
        elif signature is not None:
            headers["X-Hub-Signature-256"] = signature
        return headers

    return _headers


@pytest.fixture
def encode() -> Callable[[Dict[str, Any]], bytes]:
    return lambda payload: json.dumps(payload).encode()


# ==========================================================================
# Application Fixtures
# ==========================================================================

@pytest.fixture
def container(
    pipeline_config: PipelineConfig,
    dispatcher: AsyncMock,
    notifier: AsyncMock,
    executor: ScriptedExecutor,
) -> ServiceContainer:
    return build_container(
        settings,
        pipeline_config,
        dispatcher=dispatcher,
        executor=executor,
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against an app wired to the test container."""
    app = create_app(container)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    await container.runner.stop_all()
