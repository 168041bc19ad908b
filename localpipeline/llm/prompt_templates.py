"""Prompt templates for coding agents."""

from localpipeline.app.models.work_item import WorkItem


def get_agent_prompt(item: WorkItem, agent_display_name: str) -> str:
    """
    Generate the prompt a coding agent is launched with.

    Args:
        item: Work item the agent should implement
        agent_display_name: Human-facing agent name (e.g. "Ember")

    Returns:
        Formatted prompt for the agent process
    """
    details = [f"ID: {item.id}", f"Source: {item.source}"]
    if item.url:
        details.append(f"URL: {item.url}")
    if item.priority:
        details.append(f"Priority: {item.priority}")
    if item.labels:
        details.append(f"Labels: {', '.join(item.labels)}")
    if item.team:
        details.append(f"Team: {item.team}")

    description_section = ""
    if item.description:
        description_section = f"""
## Description

{item.description}
"""

    return f"""You are agent "{agent_display_name}", working on a single work item in an isolated git worktree.

# {item.title}

{chr(10).join(details)}
{description_section}
## Instructions

1. Read CLAUDE.md in the repository root and follow its conventions
2. Implement the work item completely; keep the change focused on it
3. Add or update tests, then run `npm test` until it passes
4. Commit your work with a message referencing {item.id}
5. Push the branch with `git push -u origin HEAD`
6. Open a pull request with `gh pr create --fill` referencing {item.id}

Do not ask questions; make reasonable decisions and note them in the pull request."""


def get_agent_instructions(agent_display_name: str) -> str:
    """
    Generate the instructions file written into every agent worktree.

    Args:
        agent_display_name: Human-facing agent name

    Returns:
        Markdown contents of the instructions file
    """
    return f"""# Agent {agent_display_name}

This worktree belongs to agent {agent_display_name} of the work pipeline.

## Rules

- Work only inside this worktree and only on the current branch.
- Never push to or rebase the trunk branch.
- Keep commits small and descriptive.
- Run the test suite (`npm test`) before pushing.
- When finished, push the branch and open a pull request with `gh pr create`.
"""
