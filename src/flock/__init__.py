"""Flock: parallel coding-agent orchestration over git worktrees and tmux."""

__version__ = "0.1.0"

__all__ = ["__version__"]
