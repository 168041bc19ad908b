"""Persistent store for work items that exhausted all retry attempts."""

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from localpipeline.persistence.json_file import locked_update, read_json

logger = logging.getLogger(__name__)


class FailureRecord(BaseModel):
    """A work item that an agent gave up on, keyed by work item id."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    agent: str
    attempts: int
    last_error: str = Field(alias="lastError")
    failed_at: str = Field(alias="failedAt")
    branch: Optional[str] = None


def _empty() -> dict:
    return {"failures": []}


class FailureStore:
    """
    Queryable JSON log of escalated failures.

    Keeps failures visible after the agent is released back to idle. A
    corrupt or unreadable file reads as an empty store.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._failures: list[FailureRecord] = []
        self.reload()

    @staticmethod
    def _parse(raw: dict) -> list[FailureRecord]:
        records = []
        entries = raw.get("failures", [])
        if not isinstance(entries, list):
            return records
        for entry in entries:
            try:
                records.append(FailureRecord.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping invalid failure record: {e}")
        return records

    def reload(self) -> None:
        self._failures = self._parse(read_json(self.path, _empty))

    def record(self, failure: FailureRecord) -> None:
        """Replace the record for the same work item in place, or append."""
        with locked_update(self.path, _empty) as raw:
            failures = self._parse(raw)
            for index, existing in enumerate(failures):
                if existing.id == failure.id:
                    failures[index] = failure
                    break
            else:
                failures.append(failure)
            raw["failures"] = [f.model_dump(by_alias=True, exclude_none=True) for f in failures]
        self._failures = failures
        logger.info(f"Recorded failure for {failure.id} (agent {failure.agent})")

    def get_all(self) -> list[FailureRecord]:
        return list(self._failures)

    def get_by_agent(self, agent: str) -> list[FailureRecord]:
        return [f for f in self._failures if f.agent == agent]

    def remove(self, work_item_id: str) -> bool:
        """
        Forget the failure for a work item.

        Returns:
            True if a record was removed
        """
        removed = False
        with locked_update(self.path, _empty) as raw:
            failures = self._parse(raw)
            kept = [f for f in failures if f.id != work_item_id]
            removed = len(kept) != len(failures)
            raw["failures"] = [f.model_dump(by_alias=True, exclude_none=True) for f in kept]
        self._failures = kept
        return removed

    def clear(self) -> None:
        with locked_update(self.path, _empty) as raw:
            raw["failures"] = []
        self._failures = []
