"""Git and pull-request hosting CLI wrappers."""

from .client import (
    DetachedHeadError,
    GitClient,
    GitCommandError,
    GitError,
    NoRemoteError,
    NotARepositoryError,
    PullOutcome,
    RemoteAccessError,
    RemoteBranchDeletedError,
    WorktreeInfo,
    parse_worktree_porcelain,
)
from .github import GitHubCLIError, GitHubClient, extract_pr_id
from .pr_title import PRTitle, truncate_pr_title
from .retry import RetryPolicy, is_transient_error

__all__ = [
    "DetachedHeadError",
    "GitClient",
    "GitCommandError",
    "GitError",
    "GitHubCLIError",
    "GitHubClient",
    "NoRemoteError",
    "NotARepositoryError",
    "PRTitle",
    "PullOutcome",
    "RemoteAccessError",
    "RemoteBranchDeletedError",
    "RetryPolicy",
    "WorktreeInfo",
    "extract_pr_id",
    "is_transient_error",
    "parse_worktree_porcelain",
    "truncate_pr_title",
]
