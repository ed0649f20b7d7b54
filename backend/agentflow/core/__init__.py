"""
Agentflow - Core Package
========================

Orchestration engine: sessions, reactions, quality pipeline, merge ordering.
"""

from agentflow.core.config import settings
from agentflow.core.database import Base

__all__ = ["Base", "settings"]
