"""Durable records shared across the pipeline."""

from localpipeline.app.models.agent import (
    AGENT_DISPLAY_NAMES,
    AGENT_NAMES,
    Agent,
    AgentStatus,
    display_name,
)
from localpipeline.app.models.work_item import WorkItem

__all__ = [
    "AGENT_DISPLAY_NAMES",
    "AGENT_NAMES",
    "Agent",
    "AgentStatus",
    "WorkItem",
    "display_name",
]
