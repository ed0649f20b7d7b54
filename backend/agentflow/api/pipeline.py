"""
Agentflow - Quality Pipeline API
================================

Endpoints:
- POST /api/v1/pipeline/run                 - Run quality agents on a branch (202)
- GET  /api/v1/pipeline                     - List pipeline runs
- GET  /api/v1/pipeline/{request_id}        - Status and agent results
- POST /api/v1/pipeline/{request_id}/stop   - Request cooperative cancellation
- GET  /api/v1/pipeline/{request_id}/events - Event history for the run
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field

from agentflow.api.deps import ServiceContainer, get_container
from agentflow.core.pipeline import DiffStats, PipelineRequest
from agentflow.core.pipeline.agents import Tier
from agentflow.core.schemas import BaseSchema, MessageResponse

router = APIRouter(prefix="/api/v1/pipeline", tags=["pipeline"])


# ==========================================================================
# Schemas
# ==========================================================================

class PipelineRunSchema(BaseSchema):
    branch: str = Field(..., min_length=1, description="Branch under review")
    worktree_path: str = Field(..., min_length=1, description="Checked-out worktree for the agents")
    request_id: Optional[str] = Field(None, description="Client-chosen id; generated when omitted")
    base_branch: Optional[str] = None
    session_id: Optional[str] = Field(None, description="Owning session, stopped together with it")
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    tier: Optional[Tier] = Field(None, description="Overrides classification by diff size")
    agents: Optional[List[str]] = Field(None, description="Overrides the tier's agent list")
    metadata: Dict[str, Any] = {}


class PipelineAcceptedResponse(BaseSchema):
    request_id: str
    status: str
    pipeline_branch: str


# ==========================================================================
# Endpoints
# ==========================================================================

@router.post("/run", response_model=PipelineAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_pipeline(
    request: PipelineRunSchema,
    services: ServiceContainer = Depends(get_container),
):
    data = request.model_dump(exclude_none=True)
    try:
        state = services.runner.start(PipelineRequest(**data))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return PipelineAcceptedResponse(
        request_id=state.request_id,
        status=state.status.value,
        pipeline_branch=state.pipeline_branch,
    )


@router.get("", response_model=List[Dict[str, Any]])
async def list_pipelines(services: ServiceContainer = Depends(get_container)):
    return [state.to_dict() for state in services.runner.list_all()]


@router.get("/{request_id}")
async def get_pipeline(request_id: str, services: ServiceContainer = Depends(get_container)):
    state = services.runner.get_status(request_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Pipeline not found: {request_id}")
    return state.to_dict()


@router.post("/{request_id}/stop", response_model=MessageResponse)
async def stop_pipeline(request_id: str, services: ServiceContainer = Depends(get_container)):
    state = services.runner.get_status(request_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Pipeline not found: {request_id}")
    stopping = await services.runner.stop(request_id)
    return MessageResponse(
        message="Stop requested" if stopping else "Pipeline already finished",
        data={"request_id": request_id, "status": state.status.value},
    )


@router.get("/{request_id}/events", response_model=List[Dict[str, Any]])
async def get_pipeline_events(request_id: str, services: ServiceContainer = Depends(get_container)):
    return [event.to_dict() for event in services.bus.get_events(request_id)]
