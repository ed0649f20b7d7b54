"""
Agentflow - Event Types
=======================

Event records published on the bus. Every orchestration step (session
transitions, reactions, quality-pipeline progress, merge ordering) emits a
PipelineEvent so observers can follow along without polling.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


# ==========================================================================
# Event Types
# ==========================================================================

class EventType(str, Enum):
    """Specific event types"""
    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_ACCEPTED = "session.accepted"
    SESSION_STATUS_CHANGED = "session.status_changed"
    SESSION_ESCALATED = "session.escalated"
    SESSION_CANCELLED = "session.cancelled"
    SESSION_RESUMED = "session.resumed"
    SESSION_ARCHIVED = "session.archived"
    SESSION_ADOPTED = "session.adopted"

    # Reaction engine
    REACTION_DECIDED = "reaction.decided"
    REACTION_IGNORED = "reaction.ignored"
    REACTION_AGENT_RESPAWNED = "reaction.agent_respawned"
    REACTION_NOTIFIED = "reaction.notified"
    REACTION_AUTO_MERGE = "reaction.auto_merge"
    REACTION_ACTION_FAILED = "reaction.action_failed"

    # Review loop
    REVIEW_LOOP_STARTED = "review_loop.started"
    REVIEW_LOOP_COMPLETED = "review_loop.completed"

    # Integration branch
    INTEGRATION_PR_MERGED = "integration.pr.merged"
    INTEGRATION_CI_PASSED = "integration.ci.passed"
    INTEGRATION_CI_FAILED = "integration.ci.failed"

    # Quality pipeline
    PIPELINE_CREATED = "pipeline.created"
    PIPELINE_STARTED = "pipeline.started"
    PIPELINE_COMPLETED = "pipeline.completed"
    PIPELINE_FAILED = "pipeline.failed"
    PIPELINE_STOPPED = "pipeline.stopped"
    PIPELINE_CORRECTING = "pipeline.correcting"
    PIPELINE_WAVE_STARTED = "pipeline.wave.started"
    PIPELINE_WAVE_COMPLETED = "pipeline.wave.completed"
    AGENT_STARTED = "pipeline.agent.started"
    AGENT_COMPLETED = "pipeline.agent.completed"
    AGENT_FAILED = "pipeline.agent.failed"

    # Merge ordering
    MERGE_QUEUED = "merge.queued"
    MERGE_HELD = "merge.held"
    MERGE_STARTED = "merge.started"
    MERGE_COMPLETED = "merge.completed"
    MERGE_CONFLICT = "merge.conflict"
    MERGE_REQUEUED = "merge.requeued"
    MERGE_ESCALATED = "merge.escalated"
    MERGE_ABANDONED = "merge.abandoned"

    # Workflow dispatch
    WORKFLOW_DISPATCHED = "workflow.dispatched"
    WORKFLOW_PUSHED = "workflow.event_pushed"


# ==========================================================================
# Core Event Structure
# ==========================================================================

def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PipelineEvent:
    """
    Base event structure for all orchestration operations.

    ``request_id`` groups related events: a session id for session and
    reaction events, a pipeline request id for quality-pipeline events.
    """
    event_type: EventType
    request_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        result = asdict(self)
        result["event_type"] = self.event_type.value
        return result

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineEvent":
        """Create from dictionary"""
        data = dict(data)
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)


# ==========================================================================
# Specialized Event Builders
# ==========================================================================

class EventBuilder:
    """Factory for creating specific event types"""

    @staticmethod
    def session_status_changed(
        session_id: str,
        branch: str,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
    ) -> PipelineEvent:
        return PipelineEvent(
            event_type=EventType.SESSION_STATUS_CHANGED,
            request_id=session_id,
            data={
                "branch": branch,
                "from": from_status,
                "to": to_status,
                "reason": reason,
            },
        )

    @staticmethod
    def session_escalated(session_id: str, branch: str, reason: str) -> PipelineEvent:
        """Automation gave up, or a human asked for escalation"""
        return PipelineEvent(
            event_type=EventType.SESSION_ESCALATED,
            request_id=session_id,
            data={"branch": branch, "reason": reason},
        )

    @staticmethod
    def reaction_ignored(
        fact_id: str,
        fact_kind: str,
        branch: Optional[str],
        reason: str,
        session_id: Optional[str] = None,
    ) -> PipelineEvent:
        return PipelineEvent(
            event_type=EventType.REACTION_IGNORED,
            request_id=session_id or fact_id,
            data={"fact_id": fact_id, "kind": fact_kind, "branch": branch, "reason": reason},
        )

    @staticmethod
    def action_failed(session_id: str, action: str, error: str) -> PipelineEvent:
        return PipelineEvent(
            event_type=EventType.REACTION_ACTION_FAILED,
            request_id=session_id,
            data={"action": action, "error": error},
        )

    @staticmethod
    def agent_started(
        request_id: str,
        agent_name: str,
        model: str,
        provider: str,
        cycle: int = 0,
    ) -> PipelineEvent:
        return PipelineEvent(
            event_type=EventType.AGENT_STARTED,
            request_id=request_id,
            data={"agent_name": agent_name, "model": model, "provider": provider, "cycle": cycle},
        )

    @staticmethod
    def agent_completed(
        request_id: str,
        agent_name: str,
        status: str,
        findings_count: int,
        fixes_applied: int,
        duration_ms: float,
    ) -> PipelineEvent:
        """Agent returned a result (``passed`` or ``failed``)"""
        return PipelineEvent(
            event_type=EventType.AGENT_COMPLETED,
            request_id=request_id,
            data={
                "agent_name": agent_name,
                "status": status,
                "findings_count": findings_count,
                "fixes_applied": fixes_applied,
                "duration_ms": duration_ms,
            },
        )

    @staticmethod
    def agent_failed(request_id: str, agent_name: str, error: str, duration_ms: float) -> PipelineEvent:
        """Agent execution raised; the wave records an ``error`` result"""
        return PipelineEvent(
            event_type=EventType.AGENT_FAILED,
            request_id=request_id,
            data={"agent_name": agent_name, "error": error, "duration_ms": duration_ms},
        )

    @staticmethod
    def correcting(request_id: str, correction_number: int, failed_agents: List[str]) -> PipelineEvent:
        return PipelineEvent(
            event_type=EventType.PIPELINE_CORRECTING,
            request_id=request_id,
            data={"correction_number": correction_number, "failed_agents": failed_agents},
        )

    @staticmethod
    def merge_event(
        event_type: EventType,
        branch: str,
        target: str,
        **details: Any,
    ) -> PipelineEvent:
        """Any merge-ordering event, keyed by the source branch"""
        return PipelineEvent(
            event_type=event_type,
            request_id=branch,
            data={"branch": branch, "target": target, **details},
        )
