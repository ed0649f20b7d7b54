"""
Agentflow - Notifications
=========================

Human-facing notifications for escalations and ready-to-merge changes.
Posts JSON to a generic webhook (chat or paging integrations); without a
URL it only logs, like a dry run.
"""

from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class NotificationError(Exception):
    """A notification could not be delivered."""


class NotificationPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationRequest(BaseModel):
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    session_id: Optional[str] = None
    branch: Optional[str] = None
    data: Dict[str, Any] = {}


class Notifier:
    """
    Sends notifications to a webhook URL.
    Logging-only when no URL is configured.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 30.0):
        self.webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=timeout)

        if self.enabled:
            logger.info("notifier_initialized", mode="live")
        else:
            logger.info("notifier_initialized", mode="logging_only")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, notification: NotificationRequest) -> None:
        """
        Deliver or log a notification.

        Raises:
            NotificationError: if the webhook is unreachable or rejects it
        """
        if not self.enabled:
            logger.info(
                "notification_logged",
                title=notification.title,
                body=notification.body,
                priority=notification.priority.value,
                session_id=notification.session_id,
                mode="disabled",
            )
            return

        try:
            response = await self._client.post(
                self.webhook_url,
                json=notification.model_dump(mode="json"),
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"notification delivery failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"notification rejected with status {response.status_code}"
            )
        logger.debug("notification_sent", title=notification.title)

    # ==================== Orchestration Notifications ====================

    async def notify_escalation(self, session_id: str, branch: str, reason: str) -> None:
        await self.send(NotificationRequest(
            title=f"Escalated: {branch}",
            body=reason,
            priority=NotificationPriority.URGENT,
            session_id=session_id,
            branch=branch,
            data={"kind": "escalation"},
        ))

    async def notify_session(self, session_id: str, branch: str, message: str) -> None:
        await self.send(NotificationRequest(
            title=f"Session update: {branch}",
            body=message,
            priority=NotificationPriority.HIGH,
            session_id=session_id,
            branch=branch,
            data={"kind": "session"},
        ))

    async def close(self) -> None:
        await self._client.aclose()
