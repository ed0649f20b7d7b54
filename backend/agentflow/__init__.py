"""
Agentflow
=========

Pipeline orchestrator that drives AI-agent changes from issue to merge.
"""

__version__ = "0.1.0"
