"""
Agentflow - Workflow Dispatch
=============================

Client for the external durable-task runner that executes long multi-step
flows (implement an issue, run the review loop, fix CI, merge). The
orchestrator submits work by workflow name and gets a run id back;
completion comes back later as provider facts.

Without a configured runner, DisabledWorkflowDispatcher logs each
submission and raises nothing.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

import httpx
import structlog

logger = structlog.get_logger()


class WorkflowDispatchError(Exception):
    """The workflow runner rejected or could not receive a submission."""


@dataclass(frozen=True)
class WorkflowRun:
    workflow: str
    run_id: str
    dispatched: bool = True


class WorkflowDispatcher(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def dispatch(self, workflow: str, input: Dict[str, Any]) -> WorkflowRun: ...

    async def push_event(self, key: str, payload: Dict[str, Any]) -> None: ...


class HttpWorkflowDispatcher:
    """
    Workflow runner over HTTP.

    - ``POST {base_url}/workflows/{name}/runs`` with ``{"input": ...}``
      returns ``{"run_id": ...}``
    - ``POST {base_url}/events`` with ``{"key": ..., "payload": ...}``
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(timeout=timeout)
        logger.info("workflow_dispatcher_initialized", mode="live", base_url=self.base_url)

    @property
    def enabled(self) -> bool:
        return True

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def dispatch(self, workflow: str, input: Dict[str, Any]) -> WorkflowRun:
        try:
            response = await self._client.post(
                f"{self.base_url}/workflows/{workflow}/runs",
                json={"input": input},
                headers=self._headers(),
            )
            response.raise_for_status()
            run_id = str(response.json().get("run_id") or "")
        except httpx.HTTPError as e:
            raise WorkflowDispatchError(f"dispatch of {workflow} failed: {e}") from e
        except ValueError as e:
            raise WorkflowDispatchError(f"dispatch of {workflow}: invalid response: {e}") from e

        if not run_id:
            raise WorkflowDispatchError(f"dispatch of {workflow}: response has no run_id")

        logger.info("workflow_dispatched", workflow=workflow, run_id=run_id)
        return WorkflowRun(workflow=workflow, run_id=run_id)

    async def push_event(self, key: str, payload: Dict[str, Any]) -> None:
        try:
            response = await self._client.post(
                f"{self.base_url}/events",
                json={"key": key, "payload": payload},
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise WorkflowDispatchError(f"event push {key} failed: {e}") from e
        logger.debug("workflow_event_pushed", key=key)

    async def close(self) -> None:
        await self._client.aclose()


class DisabledWorkflowDispatcher:
    def __init__(self):
        logger.info("workflow_dispatcher_initialized", mode="logging_only")

    @property
    def enabled(self) -> bool:
        return False

    async def dispatch(self, workflow: str, input: Dict[str, Any]) -> WorkflowRun:
        logger.info("workflow_dispatch_logged", workflow=workflow, input=input, mode="disabled")
        return WorkflowRun(workflow=workflow, run_id=f"disabled-{uuid4().hex[:8]}", dispatched=False)

    async def push_event(self, key: str, payload: Dict[str, Any]) -> None:
        logger.info("workflow_event_logged", key=key, payload=payload, mode="disabled")

    async def close(self) -> None:
        return None
