"""Per-feature workspace isolation on top of git worktrees."""

from .worktree import INITIAL_COMMIT_MESSAGE, WorkspaceManager, workspace_name

__all__ = ["INITIAL_COMMIT_MESSAGE", "WorkspaceManager", "workspace_name"]
