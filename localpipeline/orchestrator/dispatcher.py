"""Dispatching work items to agents running in isolated worktrees."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence

from localpipeline.app.models.agent import Agent, AgentStatus, display_name
from localpipeline.app.models.work_item import WorkItem
from localpipeline.git.branch_utils import branch_name, worktree_path
from localpipeline.git.worktree_manager import ProvisioningError
from localpipeline.llm.prompt_templates import get_agent_instructions, get_agent_prompt
from localpipeline.orchestrator.process_runner import (
    AgentProcess,
    ProcessExit,
    ProcessLauncher,
    run_command,
    watch_process,
)
from localpipeline.persistence.activity_log import ActivityLog, AgentEventType
from localpipeline.persistence.agent_registry import AgentRegistry

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"


class Workspace(Protocol):
    """Creates (or reuses) agent branches and worktrees and keeps them current."""

    def prepare(self, branch_name: str, worktree_path: Path) -> Path: ...

    def sync_worktrees(
        self,
        agent_worktrees: Mapping[str, Path],
        is_busy: Callable[[str], bool]
    ) -> list[str]: ...


class DispatchRunner:
    """
    Runs one work item on one agent slot.

    Dispatch happens in two steps. ``claim`` synchronously binds the item to
    the slot (status ``provisioning``) so the slot is no longer free.
    ``provision_and_launch`` then creates the branch and worktree, writes the
    agent instructions, installs dependencies and starts the agent process.
    Any failure on the way ends in ``mark_error``; nothing is raised to the
    caller. A claim released meanwhile is abandoned quietly. Process completion is posted on ``exits`` and applied by
    ``settle`` from the orchestration loop.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        activity: ActivityLog,
        workspace: Workspace,
        repo_root: Path,
        logs_dir: Path,
        agent_command: Sequence[str],
        install_command: Sequence[str] = (),
        instructions_filename: str = "CLAUDE.md",
        launcher: Optional[ProcessLauncher] = None
    ):
        """
        Initialize dispatch runner.

        Args:
            registry: Agent registry to report lifecycle into
            activity: Activity log for lifecycle events
            workspace: Branch/worktree provisioner (usually a WorktreeManager)
            repo_root: Root of the repository agents branch from
            logs_dir: Directory for per-agent process logs
            agent_command: Agent command line; "{prompt}" is substituted
            install_command: Dependency install command (empty to skip)
            instructions_filename: Instructions file written into worktrees
            launcher: Process launcher (default: real subprocesses)
        """
        self.registry = registry
        self.activity = activity
        self.workspace = workspace
        self.repo_root = Path(repo_root)
        self.logs_dir = Path(logs_dir)
        self.agent_command = list(agent_command)
        self.install_command = list(install_command)
        self.instructions_filename = instructions_filename
        self.launcher = launcher or ProcessLauncher()

        self.exits: asyncio.Queue[ProcessExit] = asyncio.Queue()
        self._watchers: dict[int, asyncio.Task] = {}  # pid -> watcher

    def log_path(self, agent_name: str) -> Path:
        return self.logs_dir / f"agent-{agent_name}.log"

    def claim(self, agent_name: str, item: WorkItem, retry: bool = False) -> Agent:
        """
        Bind ``item`` to the slot and mark it ``provisioning``.

        Args:
            agent_name: Slot to use
            item: Work item to run
            retry: Keep the retry count (re-running an errored item)
        """
        branch = branch_name(agent_name, item.id, item.title)
        wt_path = worktree_path(self.repo_root, agent_name)

        agent = self.registry.claim(
            agent_name,
            item,
            branch=branch,
            worktree_path=str(wt_path),
            reset_retries=not retry,
        )
        self.activity.record(
            agent_name,
            AgentEventType.PROVISIONING,
            work_item_id=item.id,
            work_item_title=item.title,
            message=f"Provisioning {branch}",
        )
        logger.info(f"Agent {agent_name} claimed {item.id} on {branch}")
        return agent

    async def provision_and_launch(self, agent_name: str, item: WorkItem, claim_id: str) -> bool:
        """
        Provision the claimed slot's workspace and start the agent.

        Every step re-checks that the slot is still ``provisioning`` under
        ``claim_id``. Once an operator has released the slot (or it was
        claimed again), the work is abandoned without touching the registry,
        and a process that was already launched is terminated.

        Args:
            agent_name: Claimed slot
            item: Work item bound by the claim
            claim_id: ``Agent.claim_id`` returned by ``claim``

        Returns:
            True if the agent process was launched
        """
        agent = self._claimed(agent_name, claim_id)
        if agent is None:
            return self._abandon(agent_name, item)

        branch = agent.branch or branch_name(agent_name, item.id, item.title)
        wt_path = Path(agent.worktree_path or worktree_path(self.repo_root, agent_name))
        agent_display = display_name(agent_name)

        try:
            await asyncio.to_thread(self.workspace.prepare, branch, wt_path)
            if self._claimed(agent_name, claim_id) is None:
                return self._abandon(agent_name, item)

            instructions = wt_path / self.instructions_filename
            instructions.write_text(get_agent_instructions(agent_display))

            await self._install_dependencies(wt_path)
            if self._claimed(agent_name, claim_id) is None:
                return self._abandon(agent_name, item)

            prompt = get_agent_prompt(item, agent_display)
            args = [part.replace(PROMPT_PLACEHOLDER, prompt) for part in self.agent_command]
            process = await self.launcher.launch(args, wt_path, self.log_path(agent_name))

        except Exception as e:
            if self._claimed(agent_name, claim_id) is None:
                logger.info(f"Ignoring failure of abandoned {item.id} on agent {agent_name}: {e}")
                return False
            logger.error(f"Failed to dispatch {item.id} to agent {agent_name}: {e}")
            self._fail(agent_name, item, str(e))
            return False

        if self._claimed(agent_name, claim_id) is None:
            process.terminate()
            self._watch(agent_name, process)
            return self._abandon(agent_name, item)

        self.registry.mark_busy(agent_name, item.id, item.title, branch, str(wt_path), process.pid)
        self.activity.record(
            agent_name,
            AgentEventType.WORKING,
            work_item_id=item.id,
            work_item_title=item.title,
            message=f"Agent process started (pid {process.pid})",
        )
        self._watch(agent_name, process)
        return True

    async def dispatch(self, agent_name: str, item: WorkItem, retry: bool = False) -> bool:
        """Claim the slot and run the whole provisioning sequence."""
        agent = self.claim(agent_name, item, retry=retry)
        return await self.provision_and_launch(agent_name, item, agent.claim_id)

    def _claimed(self, agent_name: str, claim_id: str) -> Optional[Agent]:
        """Fresh record of the slot if it is still provisioning under ``claim_id``."""
        self.registry.reload()
        agent = self.registry.get_agent(agent_name)
        if agent.status != AgentStatus.PROVISIONING or agent.claim_id != claim_id:
            return None
        return agent

    def _abandon(self, agent_name: str, item: WorkItem) -> bool:
        logger.info(f"Agent {agent_name} no longer holds {item.id}, abandoning its dispatch")
        return False

    def _watch(self, agent_name: str, process: AgentProcess) -> None:
        self._watchers[process.pid] = asyncio.create_task(
            watch_process(agent_name, process, self.exits)
        )

    async def _install_dependencies(self, wt_path: Path) -> None:
        if not self.install_command:
            return

        exit_code, output = await run_command(self.install_command, wt_path)
        if exit_code != 0:
            tail = output.strip().splitlines()[-5:]
            raise ProvisioningError(
                f"`{' '.join(self.install_command)}` exited with code {exit_code}: "
                + " | ".join(tail)
            )
        logger.info(f"Installed dependencies in {wt_path}")

    def _fail(self, agent_name: str, item: Optional[WorkItem], message: str) -> None:
        self.registry.mark_error(agent_name, message)
        self.activity.record(
            agent_name,
            AgentEventType.ERROR,
            work_item_id=item.id if item else None,
            work_item_title=item.title if item else None,
            message=message,
        )

    def settle(self, exit: ProcessExit) -> Optional[Agent]:
        """
        Apply a process outcome to the registry.

        Exits from a process no longer bound to the slot (the agent was
        released or re-dispatched meanwhile) are ignored.

        Returns:
            The updated agent, or None if the exit was stale
        """
        if exit.pid is not None:
            self._watchers.pop(exit.pid, None)
        self.registry.reload()
        agent = self.registry.get_agent(exit.agent_name)
        if agent.status != AgentStatus.WORKING or agent.pid != exit.pid:
            logger.info(f"Ignoring stale exit of pid {exit.pid} for agent {exit.agent_name}")
            return None

        item = agent.work_item or WorkItem(
            id=agent.work_item_id or "unknown",
            title=agent.work_item_title or "Unknown",
            source="unknown",
        )
        if exit.error is not None:
            self._fail(exit.agent_name, item, exit.error)
        elif exit.exit_code == 0:
            agent = self.registry.mark_done(exit.agent_name)
            self.activity.record(
                exit.agent_name,
                AgentEventType.DONE,
                work_item_id=item.id,
                work_item_title=item.title,
                message="Agent process exited successfully",
            )
            return agent
        else:
            self._fail(exit.agent_name, item, f"Process exited with code {exit.exit_code}")
        return self.registry.get_agent(exit.agent_name)

    def is_watching(self, pid: int) -> bool:
        return pid in self._watchers

    def check_orphans(self) -> list[str]:
        """
        Fail ``working`` slots whose process is gone and not watched by us.

        Covers agents launched before a restart of this process.

        Returns:
            Names of agents marked as errored
        """
        orphaned = []
        for agent in self.registry.reload():
            if agent.status != AgentStatus.WORKING or agent.pid is None:
                continue
            if self.is_watching(agent.pid) or _pid_alive(agent.pid):
                continue
            logger.warning(f"Agent {agent.name} process {agent.pid} is no longer running")
            self._fail(agent.name, agent.work_item, f"Agent process {agent.pid} is no longer running")
            orphaned.append(agent.name)
        return orphaned

    async def join(self) -> None:
        """Wait for every watched agent process to finish."""
        while self._watchers:
            await asyncio.gather(*list(self._watchers.values()), return_exceptions=True)
            self._watchers = {n: t for n, t in self._watchers.items() if not t.done()}

    def cancel_watchers(self) -> None:
        for task in self._watchers.values():
            task.cancel()
        self._watchers.clear()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
