"""Git worktree manager for agent isolation."""

import logging
from pathlib import Path
from typing import Callable, Mapping, Optional

from git import Repo
import git as gitpython

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Manages agent branches and their sibling worktrees."""

    def __init__(self, project_root: Path, trunk_branch: str = "main"):
        """
        Initialize worktree manager.

        Args:
            project_root: Root directory of the git repository
            trunk_branch: Branch new agent branches start from
        """
        self.project_root = Path(project_root)
        self.repo = Repo(project_root)
        self.trunk_branch = trunk_branch

    def branch_exists(self, branch_name: str) -> bool:
        return branch_name in {head.name for head in self.repo.heads}

    def ensure_branch(self, branch_name: str, base_branch: Optional[str] = None) -> bool:
        """
        Create ``branch_name`` from the trunk unless it already exists.

        Returns:
            True if the branch was created, False if it was reused
        """
        if self.branch_exists(branch_name):
            logger.info(f"Reusing existing branch {branch_name}")
            return False

        base = base_branch or self.trunk_branch
        try:
            self.repo.git.branch(branch_name, base)
        except gitpython.GitCommandError as e:
            raise ProvisioningError(f"Failed to create branch {branch_name} from {base}: {e}") from e
        logger.info(f"Created branch {branch_name} from {base}")
        return True

    def ensure_worktree(self, branch_name: str, worktree_path: Path) -> Path:
        """
        Check ``branch_name`` out at ``worktree_path``, reusing what is there.

        A worktree already on the right branch is reused; one on another
        branch is removed and recreated. A plain directory in the way is
        refused rather than deleted.

        Args:
            branch_name: Existing branch to check out
            worktree_path: Directory for the worktree

        Returns:
            Path to worktree directory

        Raises:
            ProvisioningError: If the worktree cannot be created
        """
        worktree_path = Path(worktree_path)
        self.repo.git.worktree("prune")

        existing = self._find_worktree(worktree_path)
        if existing is not None:
            if existing.get("branch") == f"refs/heads/{branch_name}":
                logger.info(f"Reusing worktree {worktree_path} on {branch_name}")
                return worktree_path
            logger.warning(
                f"Worktree {worktree_path} is on {existing.get('branch')}, recreating it"
            )
            self.remove_worktree(worktree_path)
        elif worktree_path.exists():
            raise ProvisioningError(
                f"{worktree_path} exists and is not a worktree of {self.project_root}"
            )

        try:
            self.repo.git.worktree("add", str(worktree_path), branch_name)
        except gitpython.GitCommandError as e:
            logger.error(f"Failed to create worktree {worktree_path}: {e}")
            raise ProvisioningError(f"Failed to create worktree {worktree_path}: {e}") from e

        logger.info(f"Created worktree: {worktree_path}")
        return worktree_path

    def prepare(self, branch_name: str, worktree_path: Path) -> Path:
        """Create-or-reuse both the agent branch and its worktree."""
        self.ensure_branch(branch_name)
        return self.ensure_worktree(branch_name, worktree_path)

    def _find_worktree(self, worktree_path: Path) -> Optional[dict[str, str]]:
        target = Path(worktree_path).resolve()
        for worktree in self.list_worktrees():
            if Path(worktree["path"]).resolve() == target:
                return worktree
        return None

    def remove_worktree(self, worktree_path: Path, force: bool = True) -> None:
        """
        Remove an agent worktree.

        Args:
            worktree_path: Path to worktree to remove
            force: Force removal even if worktree is dirty

        Raises:
            ProvisioningError: If removal fails
        """
        try:
            args = ["remove", str(worktree_path)]
            if force:
                args.append("--force")

            self.repo.git.worktree(*args)
            logger.info(f"Removed worktree: {worktree_path}")

        except gitpython.GitCommandError as e:
            logger.error(f"Failed to remove worktree {worktree_path}: {e}")
            raise ProvisioningError(f"Failed to remove worktree {worktree_path}: {e}") from e

    def list_worktrees(self) -> list[dict[str, str]]:
        """
        List all worktrees.

        Returns:
            List of worktree info dicts with 'path' and, unless detached, 'branch' keys
        """
        output = self.repo.git.worktree("list", "--porcelain")
        worktrees = []
        current_worktree: dict[str, str] = {}

        for line in output.split("\n"):
            if line.startswith("worktree "):
                if current_worktree:
                    worktrees.append(current_worktree)
                current_worktree = {"path": line.split(" ", 1)[1]}
            elif line.startswith("branch "):
                current_worktree["branch"] = line.split(" ", 1)[1]

        if current_worktree:
            worktrees.append(current_worktree)
        return worktrees

    def sync_worktrees(
        self,
        agent_worktrees: Mapping[str, Path],
        is_busy: Callable[[str], bool]
    ) -> list[str]:
        """
        Rebase idle agent worktrees onto ``origin/<trunk>``.

        Skips everything when the trunk cannot be fetched (offline or no
        remote). Per-worktree failures are logged and the rebase aborted.

        Args:
            agent_worktrees: Agent name -> worktree path
            is_busy: Whether an agent is currently provisioning or working

        Returns:
            Names of agents whose worktree was rebased
        """
        upstream = f"origin/{self.trunk_branch}"
        try:
            self.repo.git.fetch("origin", self.trunk_branch)
        except gitpython.GitCommandError as e:
            logger.info(f"Skipping worktree sync, cannot fetch {upstream}: {e}")
            return []

        synced = []
        for agent_name, path in agent_worktrees.items():
            if not Path(path).exists() or is_busy(agent_name):
                continue

            worktree_repo = Repo(path)
            try:
                worktree_repo.git.merge_base("--is-ancestor", upstream, "HEAD")
                continue
            except gitpython.GitCommandError:
                pass  # behind upstream

            try:
                stash_output = worktree_repo.git.stash()
                did_stash = "No local changes" not in stash_output

                try:
                    worktree_repo.git.rebase(upstream)
                except gitpython.GitCommandError as e:
                    logger.warning(f"Rebase failed for agent-{agent_name}, skipping: {e}")
                    self._quietly(worktree_repo, "rebase", "--abort")
                    if did_stash:
                        self._quietly(worktree_repo, "stash", "pop")
                    continue

                if did_stash:
                    self._quietly(worktree_repo, "stash", "pop")
                synced.append(agent_name)
                logger.info(f"Rebased agent-{agent_name} onto {upstream}")

            except gitpython.GitCommandError as e:
                logger.error(f"Error syncing agent-{agent_name}: {e}")

        return synced

    @staticmethod
    def _quietly(repo: Repo, *args: str) -> None:
        try:
            repo.git.execute(["git", *args])
        except gitpython.GitCommandError as e:
            logger.warning(f"git {' '.join(args)} failed in {repo.working_dir}: {e}")


class ProvisioningError(Exception):
    """Raised when an agent workspace cannot be provisioned."""
    pass
