"""
Agentflow - Sessions API
========================

Endpoints:
- GET    /api/v1/sessions                - List sessions
- POST   /api/v1/sessions/start          - Accept new work (202)
- GET    /api/v1/sessions/{id}           - Session details
- POST   /api/v1/sessions/{id}/escalate  - Hand the session to a human
- POST   /api/v1/sessions/{id}/cancel    - Cancel the session
- POST   /api/v1/sessions/{id}/resume    - Return an escalated session to automation
- DELETE /api/v1/sessions/{id}           - Archive the session
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from agentflow.api.deps import ServiceContainer, get_container
from agentflow.core.orchestrator import (
    ActionOutcome,
    ParallelLimitError,
    SessionConflictError,
    StartSessionRequest,
)
from agentflow.core.schemas import (
    ActionOutcomeSchema,
    EscalateSchema,
    SessionActionResponse,
    SessionListResponse,
    SessionResponse,
    StartSessionSchema,
)
from agentflow.core.sessions import SessionNotFoundError, SessionStatus, TransitionError

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


@contextmanager
def _session_errors() -> Iterator[None]:
    try:
        yield
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (SessionConflictError, TransitionError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ParallelLimitError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))


def _action_response(session, outcome: Optional[ActionOutcome] = None) -> SessionActionResponse:
    return SessionActionResponse(
        session=SessionResponse.from_session(session),
        dispatch=ActionOutcomeSchema(**outcome.to_dict()) if outcome else None,
    )


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    status_filter: Optional[SessionStatus] = None,
    include_archived: bool = False,
    services: ServiceContainer = Depends(get_container),
):
    """
    List sessions, newest first.

    Query params:
    - status_filter: only sessions in this status
    - include_archived: include archived sessions
    """
    sessions = services.store.list(include_archived=include_archived)
    if status_filter is not None:
        sessions = [s for s in sessions if s.status == status_filter]
    sessions.sort(key=lambda s: s.created_at, reverse=True)
    return SessionListResponse(
        sessions=[SessionResponse.from_session(s) for s in sessions],
        total=len(sessions),
        active=services.store.active_count(),
    )


@router.post("/start", response_model=SessionActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_session(
    request: StartSessionSchema,
    services: ServiceContainer = Depends(get_container),
):
    """
    Accept an issue or prompt and submit the implement workflow.

    The session is created even when the dispatch fails; the failure is
    reported in ``dispatch``.
    """
    if request.issue_number is None and not (request.prompt or request.title):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide an issue_number, a prompt or a title",
        )
    with _session_errors():
        session, outcome = await services.orchestrator.start_session(
            StartSessionRequest(**request.model_dump())
        )
    return _action_response(session, outcome)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, services: ServiceContainer = Depends(get_container)):
    with _session_errors():
        return SessionResponse.from_session(services.store.require(session_id))


@router.post("/{session_id}/escalate", response_model=SessionActionResponse)
async def escalate_session(
    session_id: str,
    request: EscalateSchema,
    services: ServiceContainer = Depends(get_container),
):
    with _session_errors():
        session = await services.orchestrator.escalate_session(session_id, request.reason)
    return _action_response(session)


@router.post("/{session_id}/cancel", response_model=SessionActionResponse)
async def cancel_session(session_id: str, services: ServiceContainer = Depends(get_container)):
    with _session_errors():
        session = await services.orchestrator.cancel_session(session_id)
    return _action_response(session)


@router.post("/{session_id}/resume", response_model=SessionActionResponse)
async def resume_session(session_id: str, services: ServiceContainer = Depends(get_container)):
    """Resume an escalated session: back to implementing and re-dispatch."""
    with _session_errors():
        session, outcome = await services.orchestrator.resume_session(session_id)
    return _action_response(session, outcome)


@router.delete("/{session_id}", response_model=SessionResponse)
async def archive_session(session_id: str, services: ServiceContainer = Depends(get_container)):
    with _session_errors():
        session = await services.orchestrator.archive_session(session_id)
    return SessionResponse.from_session(session)
