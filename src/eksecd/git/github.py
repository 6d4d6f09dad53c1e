"""Pull-request operations through the GitHub CLI (``gh``)."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Sequence

from ..sandbox.runner import ExecutableNotFoundError, run_process
from ..sandbox.utils import format_command, redact_secrets
from .client import GitError
from .pr_title import truncate_pr_title
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

_PR_NUMBER = re.compile(r"/pull/(\d+)")


class GitHubCLIError(GitError):
    """Raised when a ``gh`` invocation fails."""

    def __init__(self, message: str, *, command: Sequence[str] = (), output: str = "") -> None:
        self.command = tuple(command)
        self.output = redact_secrets(output)
        detail = f": {format_command(command)}" if command else ""
        suffix = f"\nOutput: {self.output.strip()}" if self.output.strip() else ""
        super().__init__(f"{message}{detail}{suffix}")


def extract_pr_id(url: str) -> str:
    """Return the pull-request number from its URL, or an empty string."""

    match = _PR_NUMBER.search(url)
    return match.group(1) if match else ""


class GitHubClient:
    """Run ``gh`` commands inside one working directory with transient-error retry."""

    def __init__(
        self,
        path: str | Path,
        *,
        retry_policy: RetryPolicy | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._path = Path(path)
        self._retry = retry_policy or RetryPolicy()
        self._log = log or logger

    def for_worktree(self, worktree_path: str | Path) -> "GitHubClient":
        return GitHubClient(worktree_path, retry_policy=self._retry, log=self._log)

    async def _gh_once(self, args: tuple[str, ...], operation: str) -> str:
        try:
            result = await run_process(("gh", *args), cwd=self._path)
        except ExecutableNotFoundError as exc:
            raise GitHubCLIError("GitHub CLI (gh) is not installed") from exc
        if not result.ok:
            raise GitHubCLIError(f"{operation} failed", command=result.args, output=result.output)
        return result.output.strip()

    async def _gh(self, *args: str, operation: str) -> str:
        return await self._retry.run(lambda: self._gh_once(args, operation), operation=operation)

    async def check_available(self) -> None:
        """Ensure ``gh`` is installed and authenticated."""

        await self._gh_once(("--version",), "gh --version")
        await self._gh_once(("auth", "status"), "gh auth status")

    async def create_pull_request(self, title: str, body: str, base_branch: str) -> str:
        fitted = truncate_pr_title(title)
        if fitted.description_prefix:
            self._log.warning("PR title too long, moving overflow to description")
        url = await self._gh(
            "pr", "create",
            "--title", fitted.title,
            "--body", fitted.apply(body),
            "--base", base_branch,
            operation="create pull request",
        )
        self._log.info("Created pull request", extra={"url": url, "base": base_branch})
        return url

    async def _view(self, selector: str, field: str) -> str:
        return await self._gh(
            "pr", "view", selector, "--json", field, "--jq", f".{field}",
            operation=f"get PR {field}",
        )

    async def get_pr_url(self, branch: str) -> str:
        return await self._view(branch, "url")

    async def get_pr_title(self, branch: str) -> str:
        return await self._view(branch, "title")

    async def get_pr_description(self, branch: str) -> str:
        return await self._view(branch, "body")

    async def get_pr_state(self, branch: str) -> str:
        return (await self._view(branch, "state")).lower()

    async def get_pr_state_by_id(self, pr_id: str) -> str:
        return (await self._view(pr_id, "state")).lower()

    async def update_pr_description(self, branch: str, description: str) -> None:
        await self._gh("pr", "edit", branch, "--body", description, operation="update PR description")

    async def update_pr_title(self, branch: str, title: str) -> None:
        """Set the title, moving any overflow to the front of the current description."""

        fitted = truncate_pr_title(title)
        if fitted.description_prefix:
            current = await self.get_pr_description(branch)
            await self.update_pr_description(branch, fitted.apply(current))
        await self._gh("pr", "edit", branch, "--title", fitted.title, operation="update PR title")

    async def has_existing_pr(self, branch: str) -> bool:
        output = await self._gh(
            "pr", "list", "--head", branch, "--json", "number", operation="list pull requests"
        )
        return output not in ("", "[]")


__all__ = ["GitHubCLIError", "GitHubClient", "extract_pr_id"]
