"""Git worktree isolation for concurrent lanes."""

from conductor.git.worktrees import WorktreeCoordinator

__all__ = ["WorktreeCoordinator"]
