"""Job-level worktree preparation, leasing and cleanup."""

from __future__ import annotations

import asyncio
import logging
import random
import shutil
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable

from ..git.client import GitClient, GitError, PullOutcome
from ..locks import PathLock
from .pool import POOL_DIR_PREFIX, PoolEmptyError, WorktreePool, reset_main_repo, reset_worktree

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "eksecd/"

_ADJECTIVES = (
    "amber", "brisk", "calm", "dapper", "eager", "fuzzy", "gentle", "hasty", "icy", "jolly",
    "keen", "lucid", "mellow", "nimble", "odd", "plucky", "quiet", "rapid", "sunny", "tidy",
)
_NOUNS = (
    "badger", "comet", "delta", "ember", "falcon", "glacier", "harbor", "island", "jaguar",
    "kestrel", "lantern", "meadow", "nebula", "otter", "pepper", "quartz", "river", "sparrow",
    "tundra", "willow",
)


class WorktreeNotFoundError(GitError):
    """Raised when a job's worktree is expected but missing."""


def generate_branch_name(now: datetime | None = None, rng: random.Random | None = None) -> str:
    """Return a fresh branch name like ``eksecd/brisk-otter-20240101-120000``."""

    chooser = rng or random.SystemRandom()
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{BRANCH_PREFIX}{chooser.choice(_ADJECTIVES)}-{chooser.choice(_NOUNS)}-{stamp}"


class WorktreeManager:
    """Give each job an isolated worktree and reclaim it afterwards.

    Mutations of the main checkout are serialized with ``repo_mutex``; a job
    holds its worktree's :class:`~eksecd.locks.PathLock` through :meth:`lease`
    for as long as it operates on that directory.
    """

    def __init__(
        self,
        git: GitClient,
        base_path: str | Path,
        *,
        pool: WorktreePool | None = None,
        lock_dir: str | Path | None = None,
        repo_mutex: asyncio.Lock | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._git = git
        self._base_path = Path(base_path)
        self._pool = pool
        self._lock_dir = lock_dir
        self._repo_mutex = repo_mutex or asyncio.Lock()
        self._log = log or logger

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def pool(self) -> WorktreePool | None:
        return self._pool

    @property
    def git(self) -> GitClient:
        return self._git

    def path_for(self, job_id: str) -> Path:
        return self._base_path / job_id

    @asynccontextmanager
    async def lease(self, path: str | Path) -> AsyncIterator[PathLock]:
        """Hold the worktree's advisory lock; raises ``LockHeldError`` when busy."""

        lock = PathLock(path, lock_dir=self._lock_dir, log=self._log)
        lock.try_lock()
        try:
            yield lock
        finally:
            lock.unlock()

    async def prepare_new_worktree(self, job_id: str, branch: str | None = None) -> tuple[str, Path]:
        """Create or acquire a worktree for a new conversation.

        Returns ``(branch, path)``.
        """

        existing = self.path_for(job_id)
        if await self._git.worktree_exists(existing):
            self._log.warning(
                "Worktree already exists for job, cleaning up",
                extra={"job_id": job_id, "worktree": str(existing)},
            )
            try:
                existing_branch = await self._git.for_worktree(existing).get_current_branch()
            except GitError:
                existing_branch = ""
            await self.cleanup_job_worktree(existing, existing_branch)

        branch = branch or generate_branch_name()
        if self._pool is not None:
            try:
                path = await self._pool.acquire(job_id, branch)
            except PoolEmptyError:
                self._log.info("Pool empty, creating worktree synchronously", extra={"job_id": job_id})
            else:
                return branch, path

        async with self._repo_mutex:
            await reset_main_repo(self._git)
            await self._git.fetch_origin()
            default_branch = await self._git.get_default_branch()
            self._base_path.mkdir(parents=True, exist_ok=True)
            await self._git.create_worktree(existing, branch, f"origin/{default_branch}")
        return branch, existing

    async def prepare_existing_worktree(self, path: str | Path) -> PullOutcome:
        """Pull the latest changes into a job's worktree.

        Raises :class:`~eksecd.git.RemoteBranchDeletedError` when the job's
        remote branch is gone.
        """

        if not await self._git.worktree_exists(path):
            raise WorktreeNotFoundError(f"worktree not found at {path}")
        return await self._git.for_worktree(path).pull_latest()

    async def reset_for_reuse(self, path: str | Path, ref: str | None = None) -> None:
        """Discard every change in ``path`` before handing it to another job."""

        await reset_worktree(self._git.for_worktree(path), ref)

    async def cleanup_job_worktree(self, path: str | Path, branch: str = "") -> None:
        if not await self._git.worktree_exists(path):
            self._log.info("Worktree already gone", extra={"worktree": str(path)})
        else:
            async with self._repo_mutex:
                await self._git.remove_worktree(path)
        if not branch:
            return
        try:
            async with self._repo_mutex:
                if await self._git.branch_exists(branch):
                    await self._git.delete_local_branch(branch)
        except GitError as exc:
            self._log.warning("Failed to delete branch", extra={"branch": branch, "error": str(exc)})

    async def cleanup_orphaned(self, tracked_paths: Iterable[str | Path]) -> int:
        """Remove job worktrees no tracked job refers to. Pool directories are skipped."""

        try:
            async with self._repo_mutex:
                await self._git.prune_worktrees()
        except GitError as exc:
            self._log.warning("Failed to prune worktrees", extra={"error": str(exc)})

        if not self._base_path.is_dir():
            return 0
        tracked = {Path(path) for path in tracked_paths}
        removed = 0
        for entry in sorted(self._base_path.iterdir()):
            if not entry.is_dir() or entry.name.startswith(POOL_DIR_PREFIX) or entry in tracked:
                continue
            self._log.info("Removing orphaned worktree", extra={"worktree": str(entry)})
            if not await self._git.worktree_exists(entry):
                try:
                    shutil.rmtree(entry)
                except OSError as exc:
                    self._log.warning(
                        "Failed to remove directory", extra={"worktree": str(entry), "error": str(exc)}
                    )
                    continue
                removed += 1
                continue
            try:
                async with self._repo_mutex:
                    await self._git.remove_worktree(entry)
            except GitError as exc:
                self._log.warning(
                    "Failed to remove orphaned worktree",
                    extra={"worktree": str(entry), "error": str(exc)},
                )
                continue
            removed += 1
        return removed


__all__ = ["BRANCH_PREFIX", "WorktreeManager", "WorktreeNotFoundError", "generate_branch_name"]
