"""Deterministic branch and worktree naming for agent work."""

import re
from pathlib import Path
from typing import Optional

SLUG_MAX_LENGTH = 40
SHORT_ID_LENGTH = 8

# agent/{agentName}/{shortId}-{slug}; the slug always starts lowercase, which
# is the only boundary between an id that may contain hyphens (LIN-42) and it.
_AGENT_BRANCH_RE = re.compile(r"^agent/\w+/(.+?)-[a-z]")


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def branch_name(agent_name: str, item_id: str, title: str) -> str:
    """
    Branch an agent works on for one work item.

    >>> branch_name("ember", "LIN-42", "Fix the login bug!")
    'agent/ember/LIN-42-fix-the-login-bug'
    """
    short_id = item_id[:SHORT_ID_LENGTH]
    slug = slugify(title)
    if not slug:
        return f"agent/{agent_name}/{short_id}"
    return f"agent/{agent_name}/{short_id}-{slug}"


def worktree_path(repo_root: Path, agent_name: str) -> Path:
    """Sibling directory of the repository: ``<parent>/agent-<name>``."""
    return Path(repo_root).parent / f"agent-{agent_name}"


def work_item_id_from_branch(branch: str) -> Optional[str]:
    """
    Recover the (possibly truncated) work item id from an agent branch.

    Returns None for branches that were not created by an agent or whose id
    boundary cannot be found.
    """
    match = _AGENT_BRANCH_RE.match(branch)
    if not match:
        return None
    return match.group(1)
