"""
Agentflow - Integration Queue API
=================================

GET  /api/v1/integration/queue  - merge requests by state
POST /api/v1/integration/report - merge workflow reports a conflict or failure
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field

from agentflow.api.deps import ServiceContainer, get_container
from agentflow.core.schemas import BaseSchema

router = APIRouter(prefix="/api/v1/integration", tags=["integration"])


class MergeQueueResponse(BaseSchema):
    pending: List[Dict[str, Any]] = Field(..., description="Admitted, ready in priority order")
    held: List[Dict[str, Any]] = Field(..., description="Waiting on unmerged dependencies")
    in_flight: List[Dict[str, Any]] = Field(..., description="One per target branch at most")
    merged: List[str]


class MergeReportSchema(BaseSchema):
    branch: str = Field(..., min_length=1, description="Integration branch being merged")
    outcome: Literal["conflict", "failed"]
    detail: Optional[str] = Field(None, max_length=2000)


@router.get("/queue", response_model=MergeQueueResponse)
async def get_merge_queue(services: ServiceContainer = Depends(get_container)):
    return MergeQueueResponse(**services.merge_scheduler.snapshot())


@router.post("/report", response_model=MergeQueueResponse)
async def report_merge_outcome(
    data: MergeReportSchema,
    services: ServiceContainer = Depends(get_container),
):
    """
    Completion callback for dispatched merges.

    A conflict re-queues the branch once and escalates on the next one;
    a failure escalates straight away. Either way the target is freed.
    """
    scheduler = services.merge_scheduler
    if data.outcome == "conflict":
        applied = await scheduler.report_conflict(data.branch, data.detail)
    else:
        applied = await scheduler.report_failure(data.branch, data.detail)

    if not applied:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No merge in flight for {data.branch}",
        )
    return MergeQueueResponse(**scheduler.snapshot())
