from __future__ import annotations

import asyncio
import random
from datetime import datetime
from pathlib import Path

import pytest

from conftest import GitFixture, requires_git, run_git
from eksecd.git import GitClient, PullOutcome, RemoteBranchDeletedError
from eksecd.locks import LockHeldError
from eksecd.worktrees import (
    BRANCH_PREFIX,
    POOL_BRANCH_PREFIX,
    POOL_DIR_PREFIX,
    PoolEmptyError,
    WorktreeManager,
    WorktreeNotFoundError,
    WorktreePool,
    generate_branch_name,
)


def make_manager(fixture: GitFixture, pool: WorktreePool | None = None) -> WorktreeManager:
    return WorktreeManager(
        GitClient(fixture.repo),
        fixture.root / "worktrees",
        pool=pool,
        lock_dir=fixture.root / "locks",
    )


def test_generate_branch_name_format() -> None:
    name = generate_branch_name(datetime(2024, 1, 2, 3, 4, 5), random.Random(7))
    assert name.startswith(BRANCH_PREFIX)
    assert name.endswith("-20240102-030405")
    adjective, noun = name.removeprefix(BRANCH_PREFIX).split("-")[:2]
    assert adjective.isalpha() and noun.isalpha()


def test_lease_is_exclusive(tmp_path: Path) -> None:
    manager = WorktreeManager(GitClient(tmp_path), tmp_path / "worktrees", lock_dir=tmp_path / "locks")
    target = tmp_path / "worktrees" / "job-1"

    async def scenario() -> None:
        async with manager.lease(target) as lock:
            assert lock.locked
            with pytest.raises(LockHeldError):
                async with manager.lease(target):
                    pass
        async with manager.lease(target):
            pass

    asyncio.run(scenario())


@requires_git
def test_prepare_new_worktree_without_pool(git_repo: GitFixture) -> None:
    manager = make_manager(git_repo)

    async def scenario() -> None:
        branch, path = await manager.prepare_new_worktree("job-1")
        assert branch.startswith(BRANCH_PREFIX)
        assert path == manager.path_for("job-1")
        assert (path / "README.md").read_text(encoding="utf-8") == "hello\n"
        assert await manager.git.for_worktree(path).get_current_branch() == branch

        # A second preparation for the same job replaces the stale worktree.
        second_branch, second_path = await manager.prepare_new_worktree("job-1", "eksecd/explicit")
        assert second_path == path
        assert second_branch == "eksecd/explicit"
        assert not await manager.git.branch_exists(branch)

    asyncio.run(scenario())


@requires_git
def test_prepare_existing_worktree(git_repo: GitFixture) -> None:
    manager = make_manager(git_repo)

    async def scenario() -> None:
        branch, path = await manager.prepare_new_worktree("job-2")
        assert await manager.prepare_existing_worktree(path) is PullOutcome.NO_UPSTREAM

        worktree = manager.git.for_worktree(path)
        git_repo.commit_file(path, "work.txt", "work\n", "work")
        await worktree.push_branch(branch)
        assert await manager.prepare_existing_worktree(path) is PullOutcome.UPDATED

        run_git(git_repo.repo, "push", "origin", "--delete", branch)
        with pytest.raises(RemoteBranchDeletedError):
            await manager.prepare_existing_worktree(path)

        with pytest.raises(WorktreeNotFoundError):
            await manager.prepare_existing_worktree(git_repo.root / "worktrees" / "nope")

    asyncio.run(scenario())


@requires_git
def test_reset_for_reuse_discards_changes(git_repo: GitFixture) -> None:
    manager = make_manager(git_repo)

    async def scenario() -> None:
        _, path = await manager.prepare_new_worktree("job-3")
        (path / "README.md").write_text("changed\n", encoding="utf-8")
        (path / "untracked.txt").write_text("x", encoding="utf-8")
        await manager.reset_for_reuse(path)
        assert (path / "README.md").read_text(encoding="utf-8") == "hello\n"
        assert not (path / "untracked.txt").exists()

    asyncio.run(scenario())


@requires_git
def test_cleanup_job_worktree_removes_branch(git_repo: GitFixture) -> None:
    manager = make_manager(git_repo)

    async def scenario() -> None:
        branch, path = await manager.prepare_new_worktree("job-4")
        await manager.cleanup_job_worktree(path, branch)
        assert not path.exists()
        assert not await manager.git.branch_exists(branch)
        # Cleaning up twice is harmless.
        await manager.cleanup_job_worktree(path, branch)

    asyncio.run(scenario())


@requires_git
def test_cleanup_orphaned_keeps_tracked_and_pool_dirs(git_repo: GitFixture) -> None:
    manager = make_manager(git_repo)

    async def scenario() -> int:
        _, tracked = await manager.prepare_new_worktree("tracked")
        _, orphan = await manager.prepare_new_worktree("orphan")
        stray = manager.base_path / "stray"
        stray.mkdir()
        pool_dir = manager.base_path / f"{POOL_DIR_PREFIX}keep"
        pool_dir.mkdir()

        removed = await manager.cleanup_orphaned([str(tracked)])

        assert tracked.exists()
        assert not orphan.exists()
        assert not stray.exists()
        assert pool_dir.exists()
        assert not await manager.git.worktree_exists(orphan)
        return removed

    assert asyncio.run(scenario()) == 2


@requires_git
def test_pool_fill_and_acquire(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)
    base = git_repo.root / "worktrees"

    async def scenario() -> None:
        pool = WorktreePool(git, base, target_size=2)
        await pool.fill_to_target()
        assert pool.size == 2
        assert all(pooled.path.name.startswith(POOL_DIR_PREFIX) for pooled in pool.ready)
        assert all(pooled.branch.startswith(POOL_BRANCH_PREFIX) for pooled in pool.ready)

        manager = make_manager(git_repo, pool)
        branch, path = await manager.prepare_new_worktree("job-5", "eksecd/from-pool")
        assert path == base / "job-5"
        assert pool.size == 1
        assert await git.for_worktree(path).get_current_branch() == "eksecd/from-pool"

        await pool.acquire("job-6", "eksecd/second")
        with pytest.raises(PoolEmptyError):
            await pool.acquire("job-7", "eksecd/third")

        # An empty pool falls back to creating the worktree directly.
        _, fallback = await manager.prepare_new_worktree("job-7")
        assert fallback == base / "job-7"
        assert fallback.exists()

    asyncio.run(scenario())


@requires_git
def test_pool_refreshes_stale_worktrees(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)

    async def scenario() -> None:
        pool = WorktreePool(git, git_repo.root / "worktrees", target_size=1)
        await pool.replenish()
        (pooled,) = pool.ready

        git_repo.commit_file(git_repo.repo, "new.txt", "new\n", "advance main")
        run_git(git_repo.repo, "push", "origin", "main")

        assert await pool.refresh_stale() == 1
        assert (pooled.path / "new.txt").exists()
        assert await pool.refresh_stale() == 0

    asyncio.run(scenario())


@requires_git
def test_pool_reclaims_worktrees_from_previous_run(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)
    base = git_repo.root / "worktrees"

    async def scenario() -> None:
        first = WorktreePool(git, base, target_size=2)
        await first.fill_to_target()
        survivors = {pooled.path for pooled in first.ready}
        invalid = base / f"{POOL_DIR_PREFIX}broken"
        invalid.mkdir()

        second = WorktreePool(git, base, target_size=2)
        reclaimed, removed = await second.reclaim_orphaned()

        assert (reclaimed, removed) == (2, 1)
        assert {pooled.path for pooled in second.ready} == survivors
        assert not invalid.exists()

        await second.cleanup()
        assert second.size == 0
        assert not any(path.exists() for path in survivors)

    asyncio.run(scenario())


def checkout_files(path: Path) -> list[str]:
    return sorted(entry.name for entry in path.iterdir() if entry.name != ".git")


@requires_git
def test_acquired_worktree_drops_leftovers_from_previous_run(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)
    base = git_repo.root / "worktrees"

    async def scenario() -> None:
        first = WorktreePool(git, base, target_size=1)
        await first.fill_to_target()
        (pooled,) = first.ready
        git_repo.commit_file(pooled.path, "committed.txt", "left\n", "work from a crashed run")
        (pooled.path / "README.md").write_text("edited\n", encoding="utf-8")
        (pooled.path / "leftover.txt").write_text("x", encoding="utf-8")

        second = WorktreePool(git, base, target_size=1)
        assert await second.reclaim_orphaned() == (1, 0)
        path = await second.acquire("job-9", "eksecd/clean")

        assert checkout_files(path) == ["README.md"]
        assert (path / "README.md").read_text(encoding="utf-8") == "hello\n"
        assert await git.for_worktree(path).get_latest_commit() == await git.get_origin_commit("main")

    asyncio.run(scenario())


@requires_git
def test_acquire_brings_stale_worktree_up_to_date(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)

    async def scenario() -> None:
        pool = WorktreePool(git, git_repo.root / "worktrees", target_size=1)
        await pool.replenish()

        git_repo.commit_file(git_repo.repo, "new.txt", "new\n", "advance main")
        run_git(git_repo.repo, "push", "origin", "main")

        path = await pool.acquire("job-10", "eksecd/fresh")
        assert (path / "new.txt").exists()
        assert await git.for_worktree(path).get_current_branch() == "eksecd/fresh"

    asyncio.run(scenario())


@requires_git
def test_pool_background_replenisher(git_repo: GitFixture) -> None:
    git = GitClient(git_repo.repo)

    async def scenario() -> None:
        pool = WorktreePool(git, git_repo.root / "worktrees", target_size=1, refresh_interval=60)
        pool.start()
        for _ in range(200):
            if pool.size == 1:
                break
            await asyncio.sleep(0.05)
        assert pool.size == 1

        await pool.acquire("job-8", "eksecd/bg")
        for _ in range(200):
            if pool.size == 1:
                break
            await asyncio.sleep(0.05)
        assert pool.size == 1
        await pool.stop()

    asyncio.run(scenario())
