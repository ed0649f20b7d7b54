"""
Agentflow - Pydantic Schemas
============================

Request/response schemas shared by the API routers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agentflow.core.sessions.session import Session


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Sessions
# ==========================================================================

class StartSessionSchema(BaseSchema):
    """Accept new work: an issue, a free-form prompt, or both."""
    title: str = Field("", max_length=500)
    prompt: str = ""
    issue_number: Optional[int] = Field(None, ge=1)
    branch: Optional[str] = Field(None, min_length=1, max_length=255)
    base_branch: Optional[str] = None
    project_path: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None


class EscalateSchema(BaseSchema):
    reason: str = Field("escalated by user", min_length=1)


class SessionResponse(BaseSchema):
    id: str
    branch: str
    integration_branch: str
    base_branch: str
    project_path: str
    issue_number: Optional[int]
    pr_number: Optional[int]
    pr_url: Optional[str]
    title: str
    status: str
    ci_retries: int
    review_retries: int
    ci_green: bool
    escalated: bool
    escalation_reason: Optional[str]
    last_transition_reason: Optional[str]
    archived: bool
    model: Optional[str]
    provider: Optional[str]
    created_at: datetime
    last_activity_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        data = session.to_dict()
        data.pop("prompt", None)
        return cls.model_validate(data)


class SessionListResponse(BaseSchema):
    sessions: List[SessionResponse]
    total: int
    active: int


class ActionOutcomeSchema(BaseSchema):
    action: str
    ok: bool
    detail: Optional[str] = None
    error: Optional[str] = None


class SessionActionResponse(BaseSchema):
    session: SessionResponse
    dispatch: Optional[ActionOutcomeSchema] = None


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class MessageResponse(BaseSchema):
    """Simple message response."""

    message: str
    data: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    workflow_runner: str
    agent_runner: str
