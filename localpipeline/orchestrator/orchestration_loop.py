"""Polling loop that drives agent retries, escalation and queue draining."""

import asyncio
import functools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from localpipeline.app.models.agent import Agent, AgentStatus
from localpipeline.app.models.work_item import WorkItem
from localpipeline.git.branch_utils import worktree_path
from localpipeline.locking.agent_lease import AgentLeases
from localpipeline.orchestrator.card_transitions import post_comment, transition_card
from localpipeline.orchestrator.dispatcher import DispatchRunner
from localpipeline.orchestrator.retry_scheduler import RetryScheduler
from localpipeline.persistence.activity_log import ActivityLog, AgentEventType
from localpipeline.persistence.agent_registry import AgentRegistry
from localpipeline.persistence.failure_store import FailureRecord, FailureStore
from localpipeline.providers.base import CardStatus, WorkItemProvider
from localpipeline.queue.work_queue import WorkQueue

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
POLL_INTERVAL = 2.0  # seconds


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class Orchestrator:
    """
    Hub of the agent subsystem.

    On every tick the orchestrator:

    1. applies finished agent processes (``done``/``error``),
    2. releases ``done`` agents and drains the work queue into the free slot,
    3. schedules a backoff retry for each ``error`` agent, or escalates it
       once ``max_retries`` is reached,
    4. re-dispatches agents whose backoff has elapsed.

    All state decisions happen inside ``tick``. Slow work (provisioning,
    tracker comments) runs as background tasks guarded by per-agent leases,
    so a tick never blocks on it and never re-enters an agent that is still
    being retried or escalated.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        queue: WorkQueue,
        failures: FailureStore,
        activity: ActivityLog,
        runner: DispatchRunner,
        scheduler: Optional[RetryScheduler] = None,
        leases: Optional[AgentLeases] = None,
        providers: Sequence[WorkItemProvider] = (),
        max_retries: int = MAX_RETRIES,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], int] = _epoch_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Agent slot registry
            queue: Work items waiting for a free slot
            failures: Store for items that exhausted their retries
            activity: Lifecycle event journal
            runner: Dispatch runner that provisions and launches agents
            scheduler: Retry scheduler (default: a fresh one)
            leases: Per-agent re-entry leases (default: fresh)
            providers: Trackers used for card moves and failure comments
            max_retries: Retries before a work item is escalated
            poll_interval: Seconds between ticks in ``run``
            clock: Current time in epoch milliseconds
            sleep: Awaitable used to wait between ticks
        """
        self.registry = registry
        self.queue = queue
        self.failures = failures
        self.activity = activity
        self.runner = runner
        self.scheduler = scheduler or RetryScheduler()
        self.leases = leases or AgentLeases()
        self.providers = list(providers)
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.clock = clock
        self._sleep = sleep

        self._tasks: set[asyncio.Task] = set()
        self.is_running = False

    # -- polling loop ---------------------------------------------------

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Tick every ``poll_interval`` seconds until ``stop_event`` is set.

        A failing tick is logged and the loop carries on.
        """
        stop_event = stop_event or asyncio.Event()
        self.is_running = True
        logger.info(
            f"Orchestrator starting: agents={', '.join(self.registry.agent_names)}, "
            f"interval={self.poll_interval}s, max_retries={self.max_retries}"
        )

        try:
            while not stop_event.is_set():
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Error in orchestration tick: {e}", exc_info=True)
                await self._sleep(self.poll_interval)
        finally:
            self.is_running = False
            logger.info("Orchestrator stopped")

    async def tick(self) -> None:
        """Run one orchestration pass over every agent slot."""
        now = self.clock()
        self._apply_exits()
        self.runner.check_orphans()

        for agent in self.registry.reload():
            if agent.status == AgentStatus.DONE:
                self._release_done(agent)
            elif agent.status == AgentStatus.ERROR:
                if self.leases.is_held(agent.name) or self.scheduler.is_scheduled(agent.name):
                    continue
                if agent.retry_count < self.max_retries:
                    self._schedule_retry(agent, now)
                else:
                    await self._escalate(agent)
            elif self.scheduler.is_scheduled(agent.name):
                # Left the error state outside the retry path
                self.scheduler.cancel(agent.name)

        await self._fire_ready_retries(now)

    def _apply_exits(self) -> None:
        while not self.runner.exits.empty():
            self.runner.settle(self.runner.exits.get_nowait())

    # -- per-state handling ---------------------------------------------

    def _release_done(self, agent: Agent) -> None:
        self.activity.record(
            agent.name,
            AgentEventType.RELEASED,
            work_item_id=agent.work_item_id,
            work_item_title=agent.work_item_title,
            message="Auto-released after completion",
        )
        self.registry.release(agent.name)
        if agent.work_item_id and self.providers:
            self._spawn(transition_card(agent.work_item_id, CardStatus.IN_REVIEW, self.providers))
        self.drain_queue()

    def _schedule_retry(self, agent: Agent, now: int) -> None:
        attempt = agent.retry_count + 1
        schedule = self.scheduler.schedule(agent.name, attempt, now)
        delay_sec = self.scheduler.seconds_until_retry(agent.name, now)
        self.activity.record(
            agent.name,
            AgentEventType.RETRY,
            work_item_id=agent.work_item_id,
            work_item_title=agent.work_item_title,
            message=(
                f"Retry {attempt}/{self.max_retries} scheduled ({delay_sec}s backoff): "
                f"{agent.error or 'Unknown error'}"
            ),
        )
        logger.info(f"Agent {agent.name}: retry {schedule.attempt} scheduled in {delay_sec}s")

    async def _escalate(self, agent: Agent) -> None:
        async def escalation():
            if not self._still_failed(agent.name, agent.work_item_id):
                return
            self._record_failure(agent)
            await self._finish_escalation(agent)

        await self._start_held(agent.name, escalation)

    def _record_failure(self, agent: Agent) -> None:
        error = agent.error or "Unknown error"
        logger.warning(f"Agent {agent.name} failed {agent.work_item_id} after {self.max_retries} attempts")

        self.activity.record(
            agent.name,
            AgentEventType.MAX_RETRIES,
            work_item_id=agent.work_item_id,
            work_item_title=agent.work_item_title,
            message=f"Failed after {self.max_retries} attempts: {error}",
        )
        self.failures.record(FailureRecord(
            id=agent.work_item_id or "unknown",
            title=agent.work_item_title or "Unknown",
            agent=agent.name,
            attempts=self.max_retries,
            last_error=error,
            failed_at=self._now_iso(),
            branch=agent.branch,
        ))

    async def _finish_escalation(self, agent: Agent) -> None:
        try:
            if agent.work_item_id:
                comment = (
                    f"Agent {agent.name} failed after {self.max_retries} attempts: "
                    f"{agent.error or 'Unknown error'}"
                )
                await post_comment(agent.work_item_id, comment, self.providers)
        finally:
            self.registry.reload()
            current = self.registry.get_agent(agent.name)
            if current.status == AgentStatus.ERROR and current.work_item_id == agent.work_item_id:
                self.activity.record(
                    agent.name,
                    AgentEventType.RELEASED,
                    work_item_id=agent.work_item_id,
                    work_item_title=agent.work_item_title,
                    message="Released after max retries exceeded",
                )
                self.registry.release(agent.name)
            self.drain_queue()

    async def _fire_ready_retries(self, now: int) -> None:
        for schedule in self.scheduler.get_ready(now):
            name = schedule.agent_name
            if self.leases.is_held(name):
                continue

            agent = self.registry.get_agent(name)
            self.scheduler.cancel(name)
            if agent.status != AgentStatus.ERROR:
                continue

            await self._start_held(name, functools.partial(self._retry, name, schedule.attempt))

    async def _retry(self, agent_name: str, attempt: int) -> None:
        if not self._still_failed(agent_name):
            return
        claimed = self._start_retry(agent_name, attempt)
        await self.runner.provision_and_launch(agent_name, claimed.work_item, claimed.claim_id)

    def _start_retry(self, agent_name: str, attempt: int) -> Agent:
        agent = self.registry.increment_retry(agent_name)
        self.activity.record(
            agent_name,
            AgentEventType.RETRY,
            work_item_id=agent.work_item_id,
            work_item_title=agent.work_item_title,
            message=f"Retry {attempt}/{self.max_retries} starting now",
        )
        logger.info(f"Agent {agent_name}: retry {attempt} starting now")

        item = agent.work_item or WorkItem(
            id=agent.work_item_id or "unknown",
            title=agent.work_item_title or "Unknown",
            source="unknown",
        )
        return self.runner.claim(agent_name, item, retry=True)

    # -- dispatching ----------------------------------------------------

    def dispatch_item(self, item: WorkItem) -> Optional[str]:
        """
        Dispatch ``item`` to the next free agent.

        Returns:
            Agent name, or None if every agent is busy
        """
        agent_name = self.registry.get_next_free_agent()
        if agent_name is None:
            logger.info(f"All agents are busy, cannot dispatch {item.id}")
            return None
        self._start_dispatch(agent_name, item)
        return agent_name

    def drain_queue(self) -> Optional[str]:
        """
        Dispatch the oldest queued item if an agent is free.

        Returns:
            Agent name the item went to, or None
        """
        agent_name = self.registry.get_next_free_agent()
        if agent_name is None:
            return None

        item = self.queue.dequeue()
        if item is None:
            return None

        self._start_dispatch(agent_name, item)
        return agent_name

    def _start_dispatch(self, agent_name: str, item: WorkItem) -> None:
        self.activity.record(
            agent_name,
            AgentEventType.DISPATCHED,
            work_item_id=item.id,
            work_item_title=item.title,
            message=f"Dispatched from {item.source}",
        )
        claimed = self.runner.claim(agent_name, item)
        self._spawn(self.runner.provision_and_launch(agent_name, item, claimed.claim_id))
        if self.providers:
            self._spawn(transition_card(item.id, CardStatus.IN_PROGRESS, self.providers))

    def release_agent(self, agent_name: str) -> None:
        """
        Operator abandonment of an agent, whatever state it is in.

        Cancels its pending retry, drops its lease, resets it to idle and
        lets the queue claim the slot.
        """
        self.scheduler.cancel(agent_name)
        self.leases.revoke(agent_name)
        agent = self.registry.get_agent(agent_name)
        if not agent.is_idle:
            self.activity.record(
                agent_name,
                AgentEventType.RELEASED,
                work_item_id=agent.work_item_id,
                work_item_title=agent.work_item_title,
                message="Released by operator",
            )
        self.registry.release(agent_name)
        self.drain_queue()

    # -- queries ----------------------------------------------------------

    def agent_for_item(self, item_id: str) -> Optional[Agent]:
        for agent in self.registry.reload():
            if agent.work_item_id == item_id and not agent.is_idle:
                return agent
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        """Agent records plus seconds until their pending retry, if any."""
        now = self.clock()
        return [
            {
                **agent.to_record(),
                "retryInSeconds": self.scheduler.seconds_until_retry(agent.name, now),
            }
            for agent in self.registry.reload()
        ]

    async def sync_worktrees(self) -> list[str]:
        """Rebase idle agent worktrees onto the trunk (see WorktreeManager)."""
        agent_worktrees = {
            name: worktree_path(self.runner.repo_root, name) for name in self.registry.agent_names
        }
        return await asyncio.to_thread(
            self.runner.workspace.sync_worktrees,
            agent_worktrees,
            lambda name: self.registry.get_agent(name).is_busy,
        )

    # -- background tasks -----------------------------------------------

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock() / 1000, tz=timezone.utc).isoformat()

    def _still_failed(self, agent_name: str, work_item_id: Optional[str] = None) -> bool:
        self.registry.reload()
        agent = self.registry.get_agent(agent_name)
        if agent.status != AgentStatus.ERROR:
            return False
        return work_item_id is None or agent.work_item_id == work_item_id

    async def _start_held(self, agent_name: str, body: Callable[[], Awaitable[Any]]) -> None:
        """
        Run ``body`` in the background while holding the agent's lease.

        Returns once the lease is taken (or the task has already finished),
        so the next tick sees the agent as leased.
        """
        holding = asyncio.Event()

        async def held() -> None:
            async with self.leases.hold(agent_name):
                holding.set()
                await body()

        task = self._spawn(held())
        waiter = asyncio.ensure_future(holding.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

    def _spawn(self, work: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(self._logged(work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _logged(work: Awaitable[Any]) -> None:
        try:
            await work
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background orchestration task failed: {e}", exc_info=True)

    async def join(self) -> None:
        """Wait until every background task (including ones they start) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Wait for background work, then stop watching agent processes.

        Args:
            timeout: Seconds to wait before cancelling whatever is still running
        """
        try:
            await asyncio.wait_for(self.join(), timeout)
        except asyncio.TimeoutError:
            pending = list(self._tasks)
            logger.warning(f"Cancelling {len(pending)} background task(s) still running at shutdown")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self.runner.cancel_watchers()
