"""
Agentflow - Quality Agents
==========================

Agent roles, result types and executors for the quality pipeline.

An executor runs one agent turn and returns an AgentResult. Executors raise
AgentExecutionError on infrastructure faults; the pipeline turns that into
an ``error`` result so one crash never aborts a wave.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from agentflow.core.config import AgentOverride

logger = structlog.get_logger()


class AgentExecutionError(Exception):
    """An agent turn could not be executed (transport, process, or protocol fault)."""


# ==========================================================================
# Results
# ==========================================================================

class AgentStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


FindingSeverity = Literal["critical", "high", "medium", "low", "info"]


class Finding(BaseModel):
    severity: FindingSeverity
    description: str
    file: Optional[str] = None
    line: Optional[int] = None
    fix_applied: bool = False
    fix_description: Optional[str] = None


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class AgentMetadata(BaseModel):
    duration_ms: float = 0
    turns_used: int = 0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    provider: str = ""


class AgentResult(BaseModel):
    agent: str
    status: AgentStatus
    findings: List[Finding] = []
    fixes_applied: int = 0
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)


class DiffStats(BaseModel):
    files_changed: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    changed_files: List[str] = []

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_deleted


Tier = Literal["small", "medium", "large"]


class AgentContext(BaseModel):
    """Read-only change context shared by every agent in a wave."""
    branch: str
    worktree_path: str
    tier: Tier
    diff_stats: DiffStats
    base_branch: str
    previous_results: List[AgentResult] = []
    metadata: Dict[str, Any] = {}


# ==========================================================================
# Roles
# ==========================================================================

AGENT_NAMES = (
    "tests",
    "security",
    "architecture",
    "performance",
    "style",
    "types",
    "docs",
    "integration",
    "e2e",
)

_RESULT_FORMAT = (
    "When finished, reply with a JSON object: "
    '{"status": "passed"|"failed", "findings": [{"severity", "description", '
    '"file", "line", "fix_applied", "fix_description"}], "fixes_applied": <int>}.'
)


@dataclass(frozen=True)
class AgentRole:
    name: str
    system_prompt: str
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5-20250929"
    max_turns: int = 30
    tools: tuple[str, ...] = ()
    context_docs: tuple[str, ...] = field(default_factory=tuple)


def _role(name: str, task: str, **kwargs: Any) -> AgentRole:
    return AgentRole(name=name, system_prompt=f"{task}\n\n{_RESULT_FORMAT}", **kwargs)


BASE_AGENT_ROLES: Dict[str, AgentRole] = {
    "tests": _role(
        "tests",
        "Run the project's test suite, fix failures introduced by the change, "
        "and re-run until green or until the failure is outside the change.",
        max_turns=50,
        context_docs=("docs/testing/**/*.md",),
    ),
    "security": _role(
        "security",
        "Audit the changed files for injection, auth, secret-handling and "
        "deserialization issues. Fix what is safe to fix; report the rest.",
        context_docs=("docs/security/**/*.md",),
    ),
    "architecture": _role(
        "architecture",
        "Review module boundaries, coupling and dependency direction of the "
        "change. Report findings only; do not edit files.",
        context_docs=("docs/design-docs/**/*.md",),
    ),
    "performance": _role(
        "performance",
        "Look for N+1 queries, unbounded loops, blocking I/O on hot paths and "
        "missing pagination in the changed code.",
    ),
    "style": _role(
        "style",
        "Run the project's linters and formatters on the changed files and fix "
        "every violation.",
    ),
    "types": _role(
        "types",
        "Run the project's type checker and fix type errors in the changed files.",
    ),
    "docs": _role(
        "docs",
        "Check that public behavior changed by this branch is reflected in the docs "
        "and update them where it is not.",
        max_turns=20,
        context_docs=("docs/**/*.md",),
    ),
    "integration": _role(
        "integration",
        "Verify the change against its callers and collaborators: contracts, "
        "configuration and migrations.",
    ),
    "e2e": _role(
        "e2e",
        "Drive the running application through the flows touched by the change "
        "and report broken behavior.",
        max_turns=60,
        tools=("browser",),
    ),
}


def resolve_agent_role(name: str, overrides: Optional[AgentOverride] = None) -> AgentRole:
    """
    Base role for ``name`` with config overrides applied.

    Raises:
        KeyError: for an unknown agent name
    """
    base = BASE_AGENT_ROLES[name]
    if overrides is None:
        return base
    changes: Dict[str, Any] = {}
    if overrides.model:
        changes["model"] = overrides.model
    if overrides.provider:
        changes["provider"] = overrides.provider
    if overrides.max_turns:
        changes["max_turns"] = overrides.max_turns
    return replace(base, **changes)


def resolve_roles(names: List[str], overrides: Mapping[str, AgentOverride]) -> Dict[str, AgentRole]:
    return {name: resolve_agent_role(name, overrides.get(name)) for name in names}


# ==========================================================================
# Executors
# ==========================================================================

class AgentExecutor(Protocol):
    async def execute(
        self,
        role: AgentRole,
        context: AgentContext,
        cancel: Optional[asyncio.Event] = None,
    ) -> AgentResult: ...


class HttpAgentExecutor:
    """
    Runs agent turns on a remote agent-runner service.

    POST ``{base_url}/agents/run`` with the role and context; the response
    body is an AgentResult.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 600.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(timeout=timeout)
        logger.info("agent_executor_initialized", mode="http", base_url=self.base_url)

    async def execute(
        self,
        role: AgentRole,
        context: AgentContext,
        cancel: Optional[asyncio.Event] = None,
    ) -> AgentResult:
        if cancel is not None and cancel.is_set():
            raise AgentExecutionError("cancelled before start")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        payload = {
            "role": {
                "name": role.name,
                "provider": role.provider,
                "model": role.model,
                "max_turns": role.max_turns,
                "tools": list(role.tools),
                "context_docs": list(role.context_docs),
                "system_prompt": role.system_prompt,
            },
            "context": context.model_dump(mode="json"),
        }

        try:
            response = await self._client.post(
                f"{self.base_url}/agents/run", json=payload, headers=headers
            )
            response.raise_for_status()
            result = AgentResult.model_validate(response.json())
        except httpx.HTTPError as e:
            raise AgentExecutionError(f"agent runner request failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise AgentExecutionError(f"invalid agent runner response: {e}") from e

        # Results are keyed by agent name; the runner does not get to rename them
        if result.agent != role.name:
            result = result.model_copy(update={"agent": role.name})
        return result

    async def close(self) -> None:
        await self._client.aclose()


class DisabledAgentExecutor:
    """Stand-in when no agent runner is configured; every turn is an infrastructure error."""

    def __init__(self):
        logger.info("agent_executor_initialized", mode="disabled")

    async def execute(
        self,
        role: AgentRole,
        context: AgentContext,
        cancel: Optional[asyncio.Event] = None,
    ) -> AgentResult:
        raise AgentExecutionError("no agent runner configured")

    async def close(self) -> None:
        return None
