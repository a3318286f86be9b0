"""Git worktrees and pull requests."""
