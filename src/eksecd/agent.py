"""eksecd process entry point."""

from __future__ import annotations

import asyncio
import logging
import signal

from . import __version__
from .config import AgentSettings, get_settings
from .git.client import GitClient, GitError
from .git.github import GitHubClient
from .locks import LockError, PathLock, RepoLock
from .orchestrator import Orchestrator
from .profiles import ProfileLoadError, load_profiles
from .sandbox.runner import SandboxRunner
from .state.store import JobStateStore, StateError
from .worktrees.manager import WorktreeManager
from .worktrees.pool import WorktreePool

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the agent."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


async def validate_environment(git: GitClient, github: GitHubClient) -> None:
    """Fail fast unless the repository, its remote and ``gh`` are usable."""

    await git.is_git_repository()
    await git.is_repository_root()
    await git.has_remote()
    await git.validate_remote_access()
    await github.check_available()
    logger.info("Git environment validated", extra={"repo": str(git.path)})


async def create_orchestrator(settings: AgentSettings, *, validate: bool = True) -> Orchestrator:
    """Build every component from ``settings`` and tidy up after a previous run."""

    git = GitClient(settings.repo_path)
    github = GitHubClient(settings.repo_path)
    if validate:
        await validate_environment(git, github)

    state = JobStateStore.restore(settings.state_path, agent_id=settings.agent_id)
    base_path = settings.resolved_worktree_base()
    repo_mutex = asyncio.Lock()
    pool = None
    if settings.worktree_pool_size > 0:
        pool = WorktreePool(git, base_path, settings.worktree_pool_size, repo_mutex=repo_mutex)
    worktrees = WorktreeManager(
        git,
        base_path,
        pool=pool,
        lock_dir=settings.resolved_lock_dir(),
        repo_mutex=repo_mutex,
    )
    orchestrator = Orchestrator(
        settings,
        state=state,
        worktrees=worktrees,
        runner=SandboxRunner(settings.sandbox_config()),
        profiles=load_profiles(settings.profile_paths),
        github=github,
    )
    # Fail on a misconfigured default profile before any job arrives.
    orchestrator.profile_for()

    if pool is not None:
        await pool.reclaim_orphaned()
    tracked = [job.worktree_path for job in state.list_jobs().values() if job.worktree_path]
    removed = await worktrees.cleanup_orphaned(tracked)
    logger.info(
        "Agent components ready",
        extra={
            "agent_id": state.agent_id,
            "worktree_base": str(base_path),
            "pool_size": settings.worktree_pool_size,
            "orphans_removed": removed,
        },
    )
    return orchestrator


async def run_agent(settings: AgentSettings, stop: asyncio.Event | None = None) -> None:
    """Recover interrupted work and keep the worktree pool warm until ``stop`` is set."""

    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler unavailable on this platform")

    orchestrator = await create_orchestrator(settings)
    pool = orchestrator.worktrees.pool
    if pool is not None:
        pool.start()
    try:
        await orchestrator.recover()
        await stop.wait()
        logger.info("Stop requested, waiting for running jobs")
        await orchestrator.wait_idle()
    finally:
        if pool is not None:
            await pool.stop()


def main() -> None:
    """Entry point for running the agent via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Launching eksecd",
        extra={
            "version": __version__,
            "repo": str(settings.repo_path),
            "managed": settings.managed,
            "max_concurrency": settings.max_concurrency,
        },
    )

    instance_locks = []
    try:
        for lock in (
            PathLock(settings.repo_path, lock_dir=settings.resolved_lock_dir()),
            RepoLock(settings.repo_path),
        ):
            lock.try_lock()
            instance_locks.append(lock)
    except LockError as exc:
        logger.error("Cannot start: %s", exc)
        for lock in instance_locks:
            lock.unlock()
        raise SystemExit(1) from exc

    try:
        asyncio.run(run_agent(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except (GitError, StateError, ProfileLoadError) as exc:
        logger.error("Startup failed: %s", exc)
        raise SystemExit(1) from exc
    finally:
        for lock in reversed(instance_locks):
            lock.unlock()


__all__ = ["configure_logging", "create_orchestrator", "main", "run_agent", "validate_environment"]


if __name__ == "__main__":
    main()
