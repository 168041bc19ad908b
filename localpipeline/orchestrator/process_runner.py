"""Launching external agent processes and reporting how they end."""

import asyncio
import logging
from pathlib import Path
from typing import IO, Optional, Protocol, Sequence

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProcessExit(BaseModel):
    """Completion message for one agent process."""
    agent_name: str
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None  # set when the process failed while running


class AgentProcess(Protocol):
    """Handle to a launched agent process."""

    @property
    def pid(self) -> int: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...


class RunningProcess:
    """An ``asyncio`` subprocess whose output goes to an open log file."""

    def __init__(self, process: asyncio.subprocess.Process, log_file: IO[str]):
        self._process = process
        self._log_file = log_file

    @property
    def pid(self) -> int:
        return self._process.pid

    async def wait(self) -> int:
        try:
            return await self._process.wait()
        finally:
            self._log_file.close()

    def terminate(self) -> None:
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass  # already exited


class ProcessLauncher:
    """Launches agent processes with combined stdout/stderr sent to a log file."""

    async def launch(self, args: Sequence[str], cwd: Path, log_path: Path) -> AgentProcess:
        """
        Start ``args`` in ``cwd``.

        The log file is truncated first so it only holds the current run.

        Raises:
            OSError: If the executable cannot be started
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "w", encoding="utf-8")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
        except BaseException:
            log_file.close()
            raise

        logger.info(f"Launched {args[0]} (pid {process.pid}) in {cwd}, logging to {log_path}")
        return RunningProcess(process, log_file)


async def run_command(args: Sequence[str], cwd: Path) -> tuple[int, str]:
    """
    Run a short-lived command to completion.

    Returns:
        Tuple of (exit_code, combined output)
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    output, _ = await process.communicate()
    return process.returncode, output.decode(errors="replace")


async def watch_process(
    agent_name: str,
    process: AgentProcess,
    exits: "asyncio.Queue[ProcessExit]"
) -> None:
    """Wait for ``process`` and post its outcome on the ``exits`` channel."""
    try:
        exit_code = await process.wait()
        message = ProcessExit(agent_name=agent_name, pid=process.pid, exit_code=exit_code)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Lost track of agent {agent_name} process {process.pid}: {e}")
        message = ProcessExit(agent_name=agent_name, pid=process.pid, error=str(e))

    logger.info(
        f"Agent {agent_name} process {process.pid} finished: "
        f"exit_code={message.exit_code}, error={message.error}"
    )
    await exits.put(message)
