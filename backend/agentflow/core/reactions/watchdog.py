"""
Agentflow - Inactivity Watchdog
===============================

Periodically turns idle sessions into ``session.inactive`` facts. The fact
identity includes the session's last activity timestamp, so a session that
stays idle is reported once until something touches it again.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from agentflow.core.reactions.facts import Fact, FactKind
from agentflow.core.sessions.session import Session, utcnow
from agentflow.core.sessions.store import SessionStore

logger = structlog.get_logger()


def inactivity_fact(session: Session) -> Fact:
    now = utcnow()
    idle_minutes = int((now - session.last_activity_at).total_seconds() // 60)
    return Fact(
        kind=FactKind.SESSION_INACTIVE,
        branch=session.integration_branch,
        pr_number=session.pr_number,
        source_id=f"{session.id}@{session.last_activity_at.isoformat()}",
        observed_at=now,
        details={"session_id": session.id, "idle_minutes": idle_minutes},
    )


class InactivityWatchdog:
    def __init__(
        self,
        store: SessionStore,
        submit: Callable[[Fact], Awaitable[object]],
        escalate_after_min: float,
        interval_seconds: float = 60.0,
    ):
        self.store = store
        self.submit = submit
        self.escalate_after_min = escalate_after_min
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def scan(self) -> int:
        """Submit one fact per idle session. Returns how many were submitted."""
        idle = self.store.idle_sessions(self.escalate_after_min)
        for session in idle:
            fact = inactivity_fact(session)
            logger.info(
                "session_inactive",
                session_id=session.id,
                branch=session.branch,
                idle_minutes=fact.details["idle_minutes"],
            )
            await self.submit(fact)
        return len(idle)

    async def _loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.scan()
            except Exception as e:
                logger.error("watchdog_scan_failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.escalate_after_min <= 0:
            logger.info("watchdog_disabled")
            return
        if not self.running:
            self._stopped.clear()
            self._task = asyncio.create_task(self._loop())
            logger.info(
                "watchdog_started",
                escalate_after_min=self.escalate_after_min,
                interval_seconds=self.interval_seconds,
            )

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
