"""
Agentflow - Session Repository
==============================

Durable persistence for sessions over async SQLAlchemy. ``save`` upserts
on every commit; ``load`` restores non-archived sessions at startup.
"""

from datetime import datetime, timezone
from typing import List

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.core.database import session_scope
from agentflow.core.sessions.session import Session

logger = structlog.get_logger()

_FIELDS = (
    "branch",
    "integration_branch",
    "base_branch",
    "project_path",
    "issue_number",
    "pr_number",
    "pr_url",
    "title",
    "prompt",
    "model",
    "provider",
    "status",
    "ci_retries",
    "review_retries",
    "ci_green",
    "escalated",
    "escalation_reason",
    "last_transition_reason",
    "archived",
    "last_activity_at",
)

_LIST_FIELDS = ("applied_facts",)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SessionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, session: Session) -> None:
        from agentflow.core.models import SessionRecord

        async with session_scope(self.session_factory) as db:
            record = await db.get(SessionRecord, session.id)
            if record is None:
                record = SessionRecord(id=session.id, started_at=session.created_at)
                db.add(record)
            for name in _FIELDS:
                setattr(record, name, getattr(session, name))
            for name in _LIST_FIELDS:
                setattr(record, name, list(getattr(session, name)))

    async def load(self, include_archived: bool = False) -> List[Session]:
        from agentflow.core.models import SessionRecord

        async with session_scope(self.session_factory) as db:
            query = select(SessionRecord).order_by(SessionRecord.started_at)
            if not include_archived:
                query = query.where(SessionRecord.archived.is_(False))
            records = (await db.execute(query)).scalars().all()

        sessions = []
        for record in records:
            values = {name: getattr(record, name) for name in _FIELDS}
            values["last_activity_at"] = _aware(values["last_activity_at"])
            for name in _LIST_FIELDS:
                values[name] = tuple(getattr(record, name) or ())
            sessions.append(
                Session(id=record.id, created_at=_aware(record.started_at), **values)
            )
        return sessions
