"""
Agentflow - Facts
=================

Normalized observations entering from outside (CI, review, tracker,
watchdog). A fact's identity is derived from what it describes, so the
same provider delivery always maps to the same id.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from agentflow.core.sessions.session import utcnow


class FactKind(str, Enum):
    REVIEW_CHANGES_REQUESTED = "review.changes_requested"
    REVIEW_APPROVED = "review.approved"
    PR_MERGED = "pr.merged"
    CI_FAILED = "ci.failed"
    CI_PASSED = "ci.passed"
    SESSION_INACTIVE = "session.inactive"


@dataclass(frozen=True)
class Fact:
    kind: FactKind
    branch: str
    pr_number: Optional[int] = None
    actor: Optional[str] = None
    # Provider-side id of the thing observed (review id, check suite id, merge sha)
    source_id: Optional[str] = None
    base_branch: Optional[str] = None
    observed_at: datetime = field(default_factory=utcnow, compare=False)
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def id(self) -> str:
        key = "|".join([
            self.kind.value,
            self.branch,
            "" if self.pr_number is None else str(self.pr_number),
            self.source_id or "",
        ])
        return hashlib.sha256(key.encode()).hexdigest()[:32]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "actor": self.actor,
            "source_id": self.source_id,
            "base_branch": self.base_branch,
            "observed_at": self.observed_at.isoformat(),
            "details": self.details,
        }
