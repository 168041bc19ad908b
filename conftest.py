"""Shared fixtures: an orchestrator wired to fake workspaces and agent processes."""

import asyncio
import itertools
from pathlib import Path
from typing import Optional, Sequence

import pytest

from localpipeline.app.models.agent import AGENT_NAMES
from localpipeline.orchestrator.dispatcher import DispatchRunner
from localpipeline.orchestrator.orchestration_loop import Orchestrator
from localpipeline.persistence.activity_log import ActivityLog
from localpipeline.persistence.agent_registry import AgentRegistry
from localpipeline.persistence.failure_store import FailureStore
from localpipeline.providers.base import CardStatus, ProviderCapability, WorkItemProvider
from localpipeline.queue.work_queue import WorkQueue


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeWorkspace:
    """Creates plain directories instead of git worktrees."""

    def __init__(self):
        self.prepared: list[tuple[str, Path]] = []
        self.fail_with: Optional[Exception] = None
        self.synced: list[dict[str, Path]] = []

    def prepare(self, branch_name: str, worktree_path: Path) -> Path:
        if self.fail_with is not None:
            raise self.fail_with
        worktree_path.mkdir(parents=True, exist_ok=True)
        self.prepared.append((branch_name, worktree_path))
        return worktree_path

    def sync_worktrees(self, agent_worktrees, is_busy) -> list[str]:
        self.synced.append(dict(agent_worktrees))
        return [name for name in agent_worktrees if not is_busy(name)]


class FakeProcess:
    """Agent process whose exit is decided by the test."""

    def __init__(self, pid: int, args: list[str], cwd: Path):
        self.pid = pid
        self.args = args
        self.cwd = cwd
        self.terminated = False
        self._exit = asyncio.get_running_loop().create_future()

    def finish(self, exit_code: int = 0) -> None:
        self._exit.set_result(exit_code)

    def terminate(self) -> None:
        self.terminated = True
        if not self._exit.done():
            self._exit.set_result(-15)

    async def wait(self) -> int:
        return await self._exit


class FakeLauncher:
    # Above the kernel's pid limit, so never mistaken for a live process
    FIRST_PID = 5_000_000

    def __init__(self):
        self._pids = itertools.count(self.FIRST_PID)
        self.launched: list[FakeProcess] = []
        # When set, launches wait for it; fail_with is raised once it opens
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None
        self.waiting = 0

    async def launch(self, args: Sequence[str], cwd: Path, log_path: Path) -> FakeProcess:
        if self.gate is not None:
            self.waiting += 1
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(next(self._pids), list(args), cwd)
        self.launched.append(process)
        return process


class RecordingProvider(WorkItemProvider):
    """Tracker double that records card moves and comments."""

    name = "recording"
    capabilities = frozenset({ProviderCapability.MOVE_ITEM, ProviderCapability.ADD_COMMENT})

    def __init__(self):
        self.moves: list[tuple[str, CardStatus]] = []
        self.comments: list[tuple[str, str]] = []

    async def fetch_assigned_items(self):
        return []

    async def move_item(self, item_id: str, status: CardStatus) -> None:
        self.moves.append((item_id, status))

    async def add_comment(self, item_id: str, text: str) -> None:
        self.comments.append((item_id, text))


class Pipeline:
    """Stores, runner and orchestrator rooted in one temporary directory."""

    def __init__(
        self,
        root: Path,
        agent_names: Sequence[str] = AGENT_NAMES,
        providers: Sequence[WorkItemProvider] = ()
    ):
        state = root / "state"
        self.root = root
        self.clock = FakeClock()
        self.workspace = FakeWorkspace()
        self.launcher = FakeLauncher()

        self.registry = AgentRegistry(state / "agents.json", agent_names)
        self.activity = ActivityLog(state / "agent-activity.jsonl")
        self.queue = WorkQueue(state / "queue.json")
        self.failures = FailureStore(state / "failures.json")
        self.runner = DispatchRunner(
            registry=self.registry,
            activity=self.activity,
            workspace=self.workspace,
            repo_root=root / "repo",
            logs_dir=root / "logs",
            agent_command=["agent", "--print", "{prompt}"],
            launcher=self.launcher,
        )
        self.orchestrator = Orchestrator(
            registry=self.registry,
            queue=self.queue,
            failures=self.failures,
            activity=self.activity,
            runner=self.runner,
            providers=providers,
            clock=self.clock,
        )

    async def exit_process(self, process: FakeProcess, exit_code: int = 0) -> None:
        """Finish ``process`` and wait until its exit is posted for the next tick."""
        posted = self.runner.exits.qsize()
        process.finish(exit_code)
        while self.runner.exits.qsize() == posted:
            await asyncio.sleep(0)

    def events(self, agent: Optional[str] = None) -> list[tuple[str, Optional[str]]]:
        return [(e.event.value, e.message) for e in self.activity.read_events(agent=agent)]


@pytest.fixture
def make_pipeline(tmp_path):
    """Factory for a fresh pipeline; call with agent_names/providers overrides."""

    def factory(**kwargs) -> Pipeline:
        return Pipeline(tmp_path, **kwargs)

    return factory
