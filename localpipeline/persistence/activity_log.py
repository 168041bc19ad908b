"""Append-only journal of agent lifecycle events."""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from localpipeline.persistence.json_file import file_lock

logger = logging.getLogger(__name__)


class AgentEventType(str, Enum):
    """Lifecycle transitions recorded in the activity log."""
    DISPATCHED = "dispatched"
    PROVISIONING = "provisioning"
    WORKING = "working"
    DONE = "done"
    ERROR = "error"
    RETRY = "retry"
    MAX_RETRIES = "max-retries"
    RELEASED = "released"


class AgentEvent(BaseModel):
    """One line of the activity log."""
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    agent: str
    event: AgentEventType
    work_item_id: Optional[str] = Field(default=None, alias="workItemId")
    work_item_title: Optional[str] = Field(default=None, alias="workItemTitle")
    message: Optional[str] = None


class ActivityLog:
    """Newline-delimited JSON event log; events are never rewritten."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, event: AgentEvent) -> None:
        line = json.dumps(event.model_dump(mode="json", by_alias=True, exclude_none=True))
        with file_lock(self.path):
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug(f"{event.agent}: {event.event.value} {event.message or ''}")

    def record(
        self,
        agent: str,
        event: AgentEventType,
        work_item_id: Optional[str] = None,
        work_item_title: Optional[str] = None,
        message: Optional[str] = None
    ) -> AgentEvent:
        """Build and append an event stamped with the current time."""
        entry = AgentEvent(
            agent=agent,
            event=event,
            work_item_id=work_item_id,
            work_item_title=work_item_title,
            message=message,
        )
        self.append(entry)
        return entry

    def read_events(self, agent: Optional[str] = None, limit: Optional[int] = None) -> list[AgentEvent]:
        """
        Read events oldest-first.

        Malformed lines are skipped.

        Args:
            agent: Only return events for this agent
            limit: Only return the last ``limit`` matching events
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError:
            return []

        events = []
        for line in lines:
            if not line.strip():
                continue
            try:
                events.append(AgentEvent.model_validate_json(line))
            except ValidationError:
                continue

        if agent:
            events = [e for e in events if e.agent == agent]
        if limit and limit > 0:
            events = events[-limit:]
        return events
