"""File-backed FIFO of work items waiting for a free agent slot."""

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from localpipeline.app.models.work_item import WorkItem
from localpipeline.persistence.json_file import file_lock, locked_update, read_json, write_json

logger = logging.getLogger(__name__)


def _empty() -> dict:
    return {"items": []}


class WorkQueue:
    """
    Durable FIFO queue of work items.

    Webhook ingestion appends, the orchestration loop drains. Each operation
    is one locked read-modify-write of the queue file, so producers in other
    processes never observe or cause a partial write. The file does not exist
    until the first write; a missing file is an empty queue.
    """

    def __init__(self, path: Path):
        """
        Initialize work queue.

        Args:
            path: JSON file holding ``{"items": [...]}``
        """
        self.path = Path(path)

    @staticmethod
    def _parse(raw: dict) -> list[WorkItem]:
        items = []
        entries = raw.get("items", [])
        if not isinstance(entries, list):
            return items
        for entry in entries:
            try:
                items.append(WorkItem.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Dropping invalid queued item: {e}")
        return items

    def enqueue(self, item: WorkItem) -> None:
        """Append ``item`` to the tail of the queue."""
        with locked_update(self.path, _empty) as raw:
            items = self._parse(raw)
            items.append(item)
            raw["items"] = [i.model_dump(exclude_none=True) for i in items]
        logger.info(f"Enqueued work item {item.id} ({len(items)} waiting)")

    def dequeue(self) -> Optional[WorkItem]:
        """
        Remove and return the oldest item.

        Returns:
            WorkItem, or None if the queue is empty
        """
        with file_lock(self.path):
            items = self._parse(read_json(self.path, _empty))
            if not items:
                return None
            head = items.pop(0)
            write_json(self.path, {"items": [i.model_dump(exclude_none=True) for i in items]})
        logger.info(f"Dequeued work item {head.id} ({len(items)} waiting)")
        return head

    def get_all(self) -> list[WorkItem]:
        """Snapshot of the queue, oldest first."""
        return self._parse(read_json(self.path, _empty))

    def clear(self) -> None:
        """Drop every queued item."""
        with locked_update(self.path, _empty) as raw:
            raw["items"] = []
        logger.info("Cleared work queue")

    def __len__(self) -> int:
        return len(self.get_all())
