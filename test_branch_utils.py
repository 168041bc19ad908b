"""Test script for branch and worktree naming."""

from pathlib import Path

from localpipeline.git.branch_utils import (
    branch_name,
    slugify,
    work_item_id_from_branch,
    worktree_path,
)


def test_branch_name_from_title():
    assert branch_name("ember", "LIN-42", "Fix the login bug!") == "agent/ember/LIN-42-fix-the-login-bug"
    assert branch_name("tide", "#7", "  Ünïcode & Spaces  ") == "agent/tide/#7-n-code-spaces"


def test_branch_name_truncates_id_and_slug():
    name = branch_name(
        "gale",
        "5f2b9c1e-77aa-4a1b",
        "Implement the new authentication flow for mobile clients",
    )
    assert name == "agent/gale/5f2b9c1e-implement-the-new-authentication-flow-fo"


def test_slug_never_ends_with_hyphen():
    assert slugify("x" * 39 + " yz") == "x" * 39
    assert slugify("--Hello,  World--") == "hello-world"


def test_branch_name_without_slug():
    assert branch_name("terra", "JIRA-1", "!!!") == "agent/terra/JIRA-1"


def test_worktree_is_repo_sibling():
    assert worktree_path(Path("/src/app"), "ember") == Path("/src/agent-ember")


def test_work_item_id_from_branch():
    assert work_item_id_from_branch("agent/ember/LIN-42-fix-the-login-bug") == "LIN-42"
    assert work_item_id_from_branch("agent/tide/#7-add-dark-mode") == "#7"
    assert work_item_id_from_branch("feature/LIN-42-something") is None
    assert work_item_id_from_branch("agent/terra/JIRA-1") is None
