"""Pre-warmed git worktrees handed out to new jobs."""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ..git.client import GitClient, GitError

logger = logging.getLogger(__name__)

POOL_DIR_PREFIX = "pool-"
POOL_BRANCH_PREFIX = "eksecd/pool-ready-"
REFRESH_INTERVAL = 5 * 60.0


class PoolEmptyError(RuntimeError):
    """Raised when no pre-warmed worktree is available."""


class PoolStoppingError(RuntimeError):
    """Raised when the pool is shutting down."""


@dataclass(slots=True)
class PooledWorktree:
    path: Path
    branch: str
    base_commit: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorktreePool:
    """Keep ``target_size`` worktrees checked out from ``origin/<default>``.

    Main-repository mutations are serialized through ``repo_mutex``, which the
    pool shares with :class:`~eksecd.worktrees.manager.WorktreeManager`.
    """

    def __init__(
        self,
        git: GitClient,
        base_path: str | Path,
        target_size: int,
        *,
        repo_mutex: asyncio.Lock | None = None,
        refresh_interval: float = REFRESH_INTERVAL,
        log: logging.Logger | None = None,
    ) -> None:
        self._git = git
        self._base_path = Path(base_path)
        self._target_size = target_size
        self._repo_mutex = repo_mutex or asyncio.Lock()
        self._refresh_interval = refresh_interval
        self._log = log or logger
        self._ready: list[PooledWorktree] = []
        self._replenish_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def size(self) -> int:
        return len(self._ready)

    @property
    def target_size(self) -> int:
        return self._target_size

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def ready(self) -> list[PooledWorktree]:
        return list(self._ready)

    # Lifecycle

    def start(self) -> None:
        """Start the background replenisher on the running event loop."""

        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self._replenisher_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        self._replenish_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _replenisher_loop(self) -> None:
        self._log.info("Worktree pool: initial fill", extra={"target_size": self._target_size})
        await self.fill_to_target()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._replenish_event.wait(), self._refresh_interval)
            except asyncio.TimeoutError:
                await self.refresh_stale()
                continue
            self._replenish_event.clear()
            if self._stop_event.is_set():
                break
            await self.fill_to_target()
        self._log.info("Worktree pool replenisher stopped")

    async def fill_to_target(self) -> None:
        while self.size < self._target_size and not self._stop_event.is_set():
            try:
                await self.replenish()
            except PoolStoppingError:
                return
            except (GitError, OSError) as exc:
                self._log.error("Worktree pool: failed to replenish", extra={"error": str(exc)})
                return

    # Core operations

    async def acquire(self, job_id: str, branch: str) -> Path:
        """Move a pooled worktree to ``<base>/<job_id>`` on branch ``branch``.

        The worktree is reset and cleaned first, so nothing a previous run
        left behind reaches the new job.
        """

        if not self._ready:
            raise PoolEmptyError("pool is empty")
        pooled = self._ready.pop(0)
        self._replenish_event.set()
        self._log.info(
            "Acquired worktree from pool",
            extra={"job_id": job_id, "worktree": str(pooled.path), "remaining": self.size},
        )

        base_ref = await self._base_ref_for(pooled)
        try:
            await reset_worktree(self._git.for_worktree(pooled.path), base_ref)
        except GitError:
            await self._discard(pooled.path, pooled.branch)
            raise

        target = self._base_path / job_id
        try:
            async with self._repo_mutex:
                await self._git.move_worktree(pooled.path, target)
        except GitError:
            await self._discard(pooled.path, pooled.branch)
            raise

        try:
            async with self._repo_mutex:
                await self._git.for_worktree(target).rename_branch(pooled.branch, branch)
        except GitError:
            try:
                async with self._repo_mutex:
                    await self._git.move_worktree(target, pooled.path)
            except GitError as revert_exc:
                self._log.error(
                    "Failed to revert worktree move",
                    extra={"worktree": str(target), "error": str(revert_exc)},
                )
            raise

        self._log.info("Pool worktree ready", extra={"worktree": str(target), "branch": branch})
        return target

    async def replenish(self) -> PooledWorktree:
        """Create one worktree and append it to the ready list."""

        if self._stop_event.is_set():
            raise PoolStoppingError("pool is stopping")
        ident = uuid.uuid4().hex[:8]
        path = self._base_path / f"{POOL_DIR_PREFIX}{ident}"
        branch = f"{POOL_BRANCH_PREFIX}{ident}"
        self._base_path.mkdir(parents=True, exist_ok=True)

        async with self._repo_mutex:
            try:
                await reset_main_repo(self._git)
            except GitError as exc:
                self._log.warning(
                    "Failed to reset main repo before pool worktree creation",
                    extra={"error": str(exc)},
                )
            await self._git.fetch_origin()
            if self._stop_event.is_set():
                raise PoolStoppingError("pool is stopping")
            default_branch = await self._git.get_default_branch()
            base_commit = await self._git.get_origin_commit(default_branch)
            await self._git.create_worktree(path, branch, f"origin/{default_branch}")

        pooled = PooledWorktree(path=path, branch=branch, base_commit=base_commit)
        self._ready.append(pooled)
        self._log.info("Created pool worktree", extra={"worktree": str(path), "pool_size": self.size})
        return pooled

    async def refresh_stale(self) -> int:
        """Reset ready worktrees whose base commit lags behind origin."""

        try:
            current = await self._current_origin_commit()
        except GitError as exc:
            self._log.warning("Staleness check failed", extra={"error": str(exc)})
            return 0
        refreshed = 0
        for pooled in list(self._ready):
            if pooled.base_commit == current:
                continue
            try:
                await self._refresh_worktree(pooled.path)
            except GitError as exc:
                self._log.warning(
                    "Failed to refresh worktree",
                    extra={"worktree": str(pooled.path), "error": str(exc)},
                )
                continue
            pooled.base_commit = current
            refreshed += 1
        if refreshed:
            self._log.info("Refreshed stale pool worktrees", extra={"count": refreshed})
        return refreshed

    async def reclaim_orphaned(self) -> tuple[int, int]:
        """Adopt ``pool-*`` directories left by a previous run.

        Returns ``(reclaimed, removed)``.
        """

        if not self._base_path.is_dir():
            return 0, 0
        try:
            current = await self._current_origin_commit()
        except GitError:
            current = ""

        reclaimed = removed = 0
        known = {pooled.path for pooled in self._ready}
        for entry in sorted(self._base_path.iterdir()):
            if not entry.is_dir() or not entry.name.startswith(POOL_DIR_PREFIX) or entry in known:
                continue
            if not await self._git.worktree_exists(entry):
                self._log.info("Removing invalid pool directory", extra={"worktree": str(entry)})
                try:
                    shutil.rmtree(entry)
                except OSError as exc:
                    self._log.warning(
                        "Failed to remove directory", extra={"worktree": str(entry), "error": str(exc)}
                    )
                else:
                    removed += 1
                continue
            try:
                branch = await self._git.for_worktree(entry).get_current_branch()
            except GitError as exc:
                self._log.warning(
                    "Failed to read pool worktree branch",
                    extra={"worktree": str(entry), "error": str(exc)},
                )
                continue
            if branch.startswith(POOL_BRANCH_PREFIX) and self.size < self._target_size:
                self._ready.append(PooledWorktree(path=entry, branch=branch, base_commit=current))
                reclaimed += 1
                self._log.info("Reclaimed pool worktree", extra={"worktree": str(entry)})
                continue
            if await self._remove_quietly(entry):
                removed += 1
        if reclaimed or removed:
            self._log.info(
                "Pool worktree recovery finished",
                extra={"reclaimed": reclaimed, "removed": removed},
            )
        return reclaimed, removed

    async def cleanup(self) -> None:
        """Remove every ready worktree and its branch."""

        self._log.info("Cleaning up worktree pool", extra={"pool_size": self.size})
        pending, self._ready = self._ready, []
        for pooled in pending:
            await self._discard(pooled.path, pooled.branch)

    # Helpers

    async def _current_origin_commit(self) -> str:
        default_branch = await self._git.get_default_branch()
        return await self._git.get_origin_commit(default_branch)

    async def _base_ref_for(self, pooled: PooledWorktree) -> str | None:
        """Return ``origin/<default>``, fetching first when ``pooled`` is stale.

        ``None`` means the default branch could not be determined and the
        worktree is reset to its own ``HEAD``.
        """

        try:
            default_branch = await self._git.get_default_branch()
            current = await self._git.get_origin_commit(default_branch)
        except GitError as exc:
            self._log.warning("Staleness check failed", extra={"error": str(exc)})
            return None
        if current != pooled.base_commit:
            try:
                async with self._repo_mutex:
                    await self._git.fetch_origin()
            except GitError as exc:
                self._log.warning(
                    "Failed to fetch for stale worktree",
                    extra={"worktree": str(pooled.path), "error": str(exc)},
                )
        return f"origin/{default_branch}"

    async def _refresh_worktree(self, path: Path) -> None:
        async with self._repo_mutex:
            await self._git.fetch_origin()
            default_branch = await self._git.get_default_branch()
        await reset_worktree(self._git.for_worktree(path), f"origin/{default_branch}")

    async def _remove_quietly(self, path: Path) -> bool:
        try:
            async with self._repo_mutex:
                await self._git.remove_worktree(path)
        except GitError as exc:
            self._log.warning("Failed to remove worktree", extra={"worktree": str(path), "error": str(exc)})
            return False
        return True

    async def _discard(self, path: Path, branch: str) -> None:
        await self._remove_quietly(path)
        try:
            async with self._repo_mutex:
                await self._git.delete_local_branch(branch)
        except GitError as exc:
            self._log.warning("Failed to delete branch", extra={"branch": branch, "error": str(exc)})


async def reset_worktree(git: GitClient, ref: str | None = None) -> None:
    """Reset-hard the worktree ``git`` is scoped to and drop untracked files."""

    await git.reset_hard(ref)
    await git.clean_untracked()


async def reset_main_repo(git: GitClient) -> None:
    """Return the main checkout to a clean, up-to-date default branch."""

    await reset_worktree(git)
    default_branch = await git.get_default_branch()
    await git.checkout_branch(default_branch)
    await git.pull_latest()


__all__ = [
    "POOL_BRANCH_PREFIX",
    "POOL_DIR_PREFIX",
    "PoolEmptyError",
    "PoolStoppingError",
    "PooledWorktree",
    "WorktreePool",
    "reset_main_repo",
    "reset_worktree",
]
