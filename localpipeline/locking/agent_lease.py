"""Per-agent leases guarding retries and escalations against re-entry."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Lease(BaseModel):
    """Represents a held lease on one agent name."""
    agent_name: str
    lease_id: str
    acquired_at: float


class LeaseHeldError(Exception):
    """Raised when a lease is requested for an agent that already has one."""
    pass


class AgentLeases:
    """
    Mutual exclusion keyed by agent name.

    Leases are held for the full duration of an asynchronous retry or
    escalation. Only the holder can release its lease (verified by lease_id),
    so a lease revoked by an operator and then re-acquired is not dropped by
    the stale holder's cleanup.
    """

    def __init__(self):
        self._held: dict[str, Lease] = {}

    def acquire(self, agent_name: str) -> Lease:
        """
        Take the lease for ``agent_name``.

        Raises:
            LeaseHeldError: If the agent is already leased
        """
        if agent_name in self._held:
            raise LeaseHeldError(f"Agent {agent_name} is already being retried or escalated")

        lease = Lease(
            agent_name=agent_name,
            lease_id=str(uuid.uuid4()),
            acquired_at=time.time()
        )
        self._held[agent_name] = lease
        logger.debug(f"Acquired lease: {agent_name} (lease_id: {lease.lease_id})")
        return lease

    def release(self, lease: Lease) -> bool:
        """
        Release a lease.

        Returns:
            True if released, False if it was revoked in the meantime
        """
        current = self._held.get(lease.agent_name)
        if current is None or current.lease_id != lease.lease_id:
            logger.debug(f"Lease for {lease.agent_name} already revoked")
            return False

        del self._held[lease.agent_name]
        logger.debug(f"Released lease: {lease.agent_name}")
        return True

    @asynccontextmanager
    async def hold(self, agent_name: str) -> AsyncIterator[Lease]:
        """
        Hold the lease for ``agent_name`` for the duration of the block.

        The lease is released on every exit path, cancellation included.

        Raises:
            LeaseHeldError: If the agent is already leased
        """
        lease = self.acquire(agent_name)
        try:
            yield lease
        finally:
            self.release(lease)

    def revoke(self, agent_name: str) -> None:
        """Forcibly drop whatever lease is held for ``agent_name``."""
        if self._held.pop(agent_name, None):
            logger.info(f"Revoked lease for agent {agent_name}")

    def is_held(self, agent_name: str) -> bool:
        return agent_name in self._held

    def get_lease(self, agent_name: str) -> Optional[Lease]:
        return self._held.get(agent_name)
