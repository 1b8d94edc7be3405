"""git branch and worktree operations."""

from .worktree import GitCommandError, GitNotFoundError, GitResult, SyncStatus, WorktreeStore

__all__ = ["GitCommandError", "GitNotFoundError", "GitResult", "SyncStatus", "WorktreeStore"]
