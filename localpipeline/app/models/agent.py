"""Agent slot records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from localpipeline.app.models.work_item import WorkItem


class AgentStatus(str, Enum):
    """Lifecycle state of an agent slot."""
    IDLE = "idle"
    PROVISIONING = "provisioning"
    WORKING = "working"
    DONE = "done"
    ERROR = "error"


AGENT_NAMES: tuple[str, ...] = ("ember", "tide", "gale", "terra")

AGENT_DISPLAY_NAMES: dict[str, str] = {
    "ember": "Ember",
    "tide": "Tide",
    "gale": "Gale",
    "terra": "Terra",
}


def display_name(agent_name: str) -> str:
    """Human-facing name for an agent slot."""
    return AGENT_DISPLAY_NAMES.get(agent_name, agent_name.capitalize())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Agent(BaseModel):
    """
    One named agent slot.

    ``work_item_id`` is set whenever the slot is not idle; ``error`` is only
    meaningful in the ``error`` state.
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    name: str
    status: AgentStatus = AgentStatus.IDLE
    work_item_id: Optional[str] = Field(default=None, alias="workItemId")
    work_item_title: Optional[str] = Field(default=None, alias="workItemTitle")
    work_item: Optional[WorkItem] = Field(default=None, alias="workItem")
    claim_id: Optional[str] = Field(default=None, alias="claimId")  # one per dispatch or retry
    branch: Optional[str] = None
    worktree_path: Optional[str] = Field(default=None, alias="worktreePath")
    pid: Optional[int] = None
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    error: Optional[str] = None
    retry_count: int = Field(default=0, ge=0, alias="retryCount")

    @property
    def is_idle(self) -> bool:
        return self.status == AgentStatus.IDLE

    @property
    def is_busy(self) -> bool:
        return self.status in (AgentStatus.PROVISIONING, AgentStatus.WORKING)

    def to_record(self) -> dict:
        """Serialize with the on-disk (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
