"""Durable registry of the fixed set of agent slots."""

import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from localpipeline.app.models.agent import AGENT_NAMES, Agent, AgentStatus, utc_now
from localpipeline.app.models.work_item import WorkItem
from localpipeline.persistence.json_file import locked_update, read_json

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Source of truth for agent slot occupancy.

    Every mutation is a full load -> mutate -> persist round trip under a file
    lock, so the registry tolerates other processes touching the same file
    between ticks. ``get_all``/``get_agent`` serve the snapshot taken by the
    last ``reload`` or mutation.
    """

    def __init__(self, path: Path, agent_names: Iterable[str] = AGENT_NAMES):
        """
        Initialize registry.

        Args:
            path: JSON file holding the agent records
            agent_names: Fixed slot names, in dispatch order
        """
        self.path = Path(path)
        self.agent_names: tuple[str, ...] = tuple(agent_names)
        if not self.agent_names:
            raise ValueError("At least one agent name is required")
        self._agents: dict[str, Agent] = {}
        self.reload()

    def _parse(self, name: str, record: Any) -> Agent:
        if not isinstance(record, dict):
            return Agent(name=name)
        try:
            return Agent.model_validate({**record, "name": name})
        except ValidationError as e:
            logger.warning(f"Discarding invalid record for agent {name}: {e}")
            return Agent(name=name)

    def _parse_all(self, raw: dict) -> dict[str, Agent]:
        return {name: self._parse(name, raw.get(name)) for name in self.agent_names}

    def _check_name(self, name: str) -> None:
        if name not in self.agent_names:
            raise UnknownAgentError(f"Unknown agent: {name}")

    def _transform(self, name: str, change: Callable[[Agent], Agent]) -> Agent:
        """Replace one slot with ``change(current)`` and persist the registry."""
        self._check_name(name)
        with locked_update(self.path, dict) as raw:
            agents = self._parse_all(raw)
            agents[name] = change(agents[name])
            raw.clear()
            raw.update({n: a.to_record() for n, a in agents.items()})
        self._agents = agents
        return agents[name]

    def reload(self) -> list[Agent]:
        """Re-read durable state and return the fresh snapshot."""
        self._agents = self._parse_all(read_json(self.path, dict))
        return self.get_all()

    def get_all(self) -> list[Agent]:
        """Snapshot of every slot, in fixed name order."""
        return [self._agents[name] for name in self.agent_names]

    def get_agent(self, name: str) -> Agent:
        """Current record for ``name``; valid names never fail."""
        self._check_name(name)
        return self._agents[name]

    def get_next_free_agent(self) -> Optional[str]:
        """
        First idle slot in fixed name order, read fresh from disk.

        Returns:
            Agent name, or None if every slot is busy
        """
        for agent in self.reload():
            if agent.is_idle:
                return agent.name
        return None

    def update_agent(self, name: str, **changes: Any) -> Agent:
        """Merge ``changes`` (snake_case field names) into the slot."""
        return self._transform(name, lambda agent: agent.model_copy(update=changes))

    def claim(
        self,
        name: str,
        item: WorkItem,
        branch: str,
        worktree_path: str,
        reset_retries: bool = True
    ) -> Agent:
        """
        Bind a work item to the slot and move it to ``provisioning``.

        Every claim gets a fresh ``claim_id``; background provisioning only
        acts on the slot while it still carries that id.

        Args:
            name: Agent slot
            item: Work item being dispatched
            branch: Branch the agent will work on
            worktree_path: Worktree the agent will work in
            reset_retries: False when re-running the same item after an error
        """
        changes: dict[str, Any] = {
            "status": AgentStatus.PROVISIONING,
            "work_item_id": item.id,
            "work_item_title": item.title,
            "work_item": item,
            "claim_id": uuid.uuid4().hex,
            "branch": branch,
            "worktree_path": worktree_path,
            "pid": None,
            "error": None,
        }
        if reset_retries:
            changes["retry_count"] = 0
        return self.update_agent(name, **changes)

    def mark_busy(
        self,
        name: str,
        work_item_id: str,
        title: str,
        branch: str,
        worktree_path: str,
        pid: int
    ) -> Agent:
        """Record the running process and move the slot to ``working``."""
        return self.update_agent(
            name,
            status=AgentStatus.WORKING,
            work_item_id=work_item_id,
            work_item_title=title,
            branch=branch,
            worktree_path=worktree_path,
            pid=pid,
            started_at=utc_now(),
            error=None,
        )

    def mark_done(self, name: str) -> Agent:
        """Terminal success, pending release; clears the process binding."""
        return self.update_agent(name, status=AgentStatus.DONE, pid=None, error=None)

    def mark_error(self, name: str, message: str) -> Agent:
        """Move to ``error``, keeping the work item and branch for a retry."""
        return self.update_agent(name, status=AgentStatus.ERROR, pid=None, error=message)

    def increment_retry(self, name: str) -> Agent:
        return self._transform(
            name,
            lambda agent: agent.model_copy(update={"retry_count": agent.retry_count + 1}),
        )

    def release(self, name: str) -> Agent:
        """Reset the slot to a pristine idle record, retry count included."""
        agent = self._transform(name, lambda _: Agent(name=name))
        logger.info(f"Released agent {name}")
        return agent


class UnknownAgentError(Exception):
    """Raised when an agent name is not one of the configured slots."""
    pass
