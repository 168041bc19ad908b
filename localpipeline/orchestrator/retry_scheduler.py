"""Exponential-backoff retry bookkeeping for errored agents."""

import math
from typing import Optional

from pydantic import BaseModel

BASE_DELAY_MS = 10_000  # 10s
MAX_DELAY_MS = 120_000  # 2 min cap


def backoff_delay(attempt: int) -> int:
    """
    Backoff before retry ``attempt``, in milliseconds.

    Attempt 1 -> 10s, attempt 2 -> 20s, attempt 3 -> 40s, capped at 2min.
    """
    if attempt < 1:
        raise ValueError(f"Retry attempts start at 1, got {attempt}")
    # Cap the exponent so very large attempts never build huge integers
    exponent = min(attempt - 1, 32)
    return min(BASE_DELAY_MS * 2 ** exponent, MAX_DELAY_MS)


class RetrySchedule(BaseModel):
    """A pending retry for one agent."""
    agent_name: str
    attempt: int
    retry_at: int  # epoch milliseconds


class RetryScheduler:
    """
    Pending retries keyed by agent name.

    Pure state with no timers: the orchestration loop asks ``get_ready`` on
    every tick. At most one schedule exists per agent; scheduling again
    replaces it.
    """

    def __init__(self):
        self._pending: dict[str, RetrySchedule] = {}

    def schedule(self, agent_name: str, attempt: int, now: int) -> RetrySchedule:
        schedule = RetrySchedule(
            agent_name=agent_name,
            attempt=attempt,
            retry_at=now + backoff_delay(attempt),
        )
        self._pending[agent_name] = schedule
        return schedule

    def get_ready(self, now: int) -> list[RetrySchedule]:
        """Schedules whose backoff has elapsed."""
        return [s for s in self._pending.values() if s.retry_at <= now]

    def cancel(self, agent_name: str) -> None:
        self._pending.pop(agent_name, None)

    def is_scheduled(self, agent_name: str) -> bool:
        return agent_name in self._pending

    def get_schedule(self, agent_name: str) -> Optional[RetrySchedule]:
        return self._pending.get(agent_name)

    def scheduled_agents(self) -> list[str]:
        return list(self._pending)

    def seconds_until_retry(self, agent_name: str, now: int) -> Optional[int]:
        """Whole seconds left before the agent's retry, or None if unscheduled."""
        schedule = self._pending.get(agent_name)
        if schedule is None:
            return None
        return max(0, math.ceil((schedule.retry_at - now) / 1000))
