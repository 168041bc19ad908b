"""Git branch and worktree management for agent isolation."""
