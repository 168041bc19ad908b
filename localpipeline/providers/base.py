"""Capability surface of work-item tracker providers."""

from abc import ABC, abstractmethod
from enum import Enum

from localpipeline.app.models.work_item import WorkItem


class CardStatus(str, Enum):
    """Tracker-independent statuses the pipeline moves cards to."""
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"


class ProviderCapability(str, Enum):
    """Optional operations a provider may support."""
    MOVE_ITEM = "move_item"
    ADD_COMMENT = "add_comment"


class WorkItemProvider(ABC):
    """
    Base class for tracker clients (Linear, Trello, Jira, GitHub, ...).

    Every provider can fetch assigned items. Moving cards and commenting are
    optional: a provider lists what it implements in ``capabilities`` and
    callers check ``supports`` before using them.
    """

    name: str = "provider"
    capabilities: frozenset[ProviderCapability] = frozenset()

    def supports(self, capability: ProviderCapability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def fetch_assigned_items(self) -> list[WorkItem]:
        """Items currently assigned to the user."""
        pass

    async def move_item(self, item_id: str, status: CardStatus) -> None:
        raise UnsupportedCapabilityError(f"{self.name} cannot move items")

    async def add_comment(self, item_id: str, text: str) -> None:
        raise UnsupportedCapabilityError(f"{self.name} cannot comment on items")


class UnsupportedCapabilityError(Exception):
    """Raised when an optional provider operation is not implemented."""
    pass
