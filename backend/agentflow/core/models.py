"""
Agentflow - Database Models
===========================

SQLAlchemy models mirroring the in-memory Session record. Rows are
never deleted: archiving sets ``archived``.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.database import Base
from agentflow.core.sessions.session import SessionStatus


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class SessionRecord(Base, TimestampMixin):
    """Persistent copy of an orchestrated session."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Branch & change
    branch: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    integration_branch: Mapped[str] = mapped_column(String(300), nullable=False)
    base_branch: Mapped[str] = mapped_column(String(255), nullable=False)
    project_path: Mapped[str] = mapped_column(String(1000), nullable=False, default=".")
    issue_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    pr_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Lifecycle
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.CREATED,
        nullable=False,
        index=True,
    )
    ci_retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ci_green: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_transition_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    applied_facts: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<SessionRecord {self.id} {self.branch} ({self.status.value})>"
