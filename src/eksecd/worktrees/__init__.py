"""Worktree pool and job workspace management."""

from .manager import BRANCH_PREFIX, WorktreeManager, WorktreeNotFoundError, generate_branch_name
from .pool import (
    POOL_BRANCH_PREFIX,
    POOL_DIR_PREFIX,
    PoolEmptyError,
    PooledWorktree,
    PoolStoppingError,
    WorktreePool,
    reset_main_repo,
    reset_worktree,
)

__all__ = [
    "BRANCH_PREFIX",
    "POOL_BRANCH_PREFIX",
    "POOL_DIR_PREFIX",
    "PoolEmptyError",
    "PoolStoppingError",
    "PooledWorktree",
    "WorktreeManager",
    "WorktreeNotFoundError",
    "WorktreePool",
    "generate_branch_name",
    "reset_main_repo",
    "reset_worktree",
]
