"""
Agentflow - Session Store
=========================

In-memory registry of sessions with a branch index and one asyncio.Lock
per session. Holding ``store.lock(session_id)`` makes the caller the single
writer for that session; different sessions proceed in parallel.
"""

import asyncio
from typing import Dict, List, Optional

import structlog

from agentflow.core.sessions.repository import SessionRepository
from agentflow.core.sessions.session import Session, SessionStatus, utcnow

logger = structlog.get_logger()


class SessionNotFoundError(LookupError):
    """Unknown session id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionStore:
    def __init__(
        self,
        integration_prefix: str = "integration/",
        base_branch: str = "main",
        repository: Optional[SessionRepository] = None,
    ):
        self.integration_prefix = integration_prefix
        self.base_branch = base_branch
        self.repository = repository
        self._sessions: Dict[str, Session] = {}
        self._by_branch: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._adopt_lock = asyncio.Lock()

    def strip_prefix(self, branch: str) -> str:
        if branch.startswith(self.integration_prefix):
            return branch[len(self.integration_prefix):]
        return branch

    def lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ==================== Reads ====================

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def by_branch(self, branch: str) -> Optional[Session]:
        """Latest non-archived session for a branch, with or without prefix."""
        session_id = self._by_branch.get(self.strip_prefix(branch))
        return self._sessions.get(session_id) if session_id else None

    def by_status(self, status: SessionStatus) -> List[Session]:
        return [s for s in self._sessions.values() if s.status == status and not s.archived]

    def list(self, include_archived: bool = False) -> List[Session]:
        sessions = [s for s in self._sessions.values() if include_archived or not s.archived]
        return sorted(sessions, key=lambda s: s.created_at)

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    # ==================== Writes ====================

    def _index(self, session: Session) -> None:
        self._sessions[session.id] = session
        if session.archived:
            if self._by_branch.get(session.branch) == session.id:
                del self._by_branch[session.branch]
        else:
            self._by_branch[session.branch] = session.id

    async def add(self, session: Session) -> Session:
        await self._persist(session)
        self._index(session)
        return session

    async def commit(self, session: Session) -> Session:
        """Replace the stored value for ``session.id`` and persist it."""
        if session.id not in self._sessions:
            raise SessionNotFoundError(session.id)
        # Memory only advances after a successful write
        await self._persist(session)
        self._index(session)
        return session

    async def archive(self, session_id: str) -> Session:
        session = self.require(session_id).with_changes(archived=True)
        return await self.commit(session)

    async def get_or_adopt(
        self,
        branch: str,
        pr_number: Optional[int] = None,
        base_branch: Optional[str] = None,
    ) -> tuple[Session, bool]:
        """
        Session tracking ``branch``, creating one in ``pr_created`` if none does.

        Returns:
            (session, adopted) where adopted is True for a new session
        """
        async with self._adopt_lock:
            existing = self.by_branch(branch)
            if existing is not None:
                if pr_number is not None and existing.pr_number is None:
                    existing = await self.commit(existing.with_changes(pr_number=pr_number))
                return existing, False

            name = self.strip_prefix(branch)
            session = Session(
                branch=name,
                integration_branch=f"{self.integration_prefix}{name}",
                base_branch=base_branch or self.base_branch,
                pr_number=pr_number,
                status=SessionStatus.PR_CREATED,
                last_transition_reason="adopted from provider event",
            )
            await self.add(session)
            logger.info("session_adopted", session_id=session.id, branch=name, pr_number=pr_number)
            return session, True

    async def load(self) -> int:
        """Restore non-archived sessions from the repository."""
        if self.repository is None:
            return 0
        sessions = await self.repository.load()
        for session in sessions:
            self._index(session)
        logger.info("sessions_restored", count=len(sessions))
        return len(sessions)

    async def _persist(self, session: Session) -> None:
        if self.repository is not None:
            await self.repository.save(session)

    def idle_sessions(self, older_than_minutes: float) -> List[Session]:
        """Active, non-escalated sessions with no activity for the given time."""
        now = utcnow()
        return [
            s for s in self._sessions.values()
            if s.is_active
            and (now - s.last_activity_at).total_seconds() > older_than_minutes * 60
        ]
