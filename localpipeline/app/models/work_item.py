"""Work item model shared by trackers, webhooks and the work queue."""

from typing import Optional

from pydantic import BaseModel


class WorkItem(BaseModel):
    """An issue or card pulled from an external tracker."""
    id: str
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None  # Urgent, High, Medium, Low
    labels: list[str] = []
    source: str  # Linear, Trello, Jira, GitHub, ...
    team: Optional[str] = None
    url: Optional[str] = None
