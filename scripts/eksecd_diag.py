"""eksecd diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from filelock import FileLock, Timeout

from eksecd.config import AgentSettings
from eksecd.git import GitClient, GitError
from eksecd.locks import LockError, LockHeldError, RepoLock
from eksecd.state import LoadedState, StateError, load_state
from eksecd.worktrees import WorktreeManager


def load_persisted(settings: AgentSettings) -> LoadedState:
    try:
        return load_state(settings.state_path.expanduser())
    except StateError as exc:
        print(f"State unavailable: {exc}")
        raise SystemExit(1)


def cmd_jobs(args: argparse.Namespace) -> None:
    state = load_persisted(AgentSettings())
    jobs = [job.model_dump(mode="json") for job in state.jobs.values()]
    jobs.sort(key=lambda job: job["updated_at"])
    if args.json:
        print(json.dumps(jobs, indent=2))
    else:
        for job in jobs:
            print(f"{job['job_id']} [{job['status']}] {job['branch_name']} -> {job['session_id'] or '-'}")


def cmd_queue(args: argparse.Namespace) -> None:
    state = load_persisted(AgentSettings())
    messages = sorted(state.queued_messages.values(), key=lambda message: message.queued_at)
    print(json.dumps([message.model_dump(mode="json") for message in messages], indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = AgentSettings()
    git = GitClient(settings.repo_path.expanduser())
    try:
        entries = asyncio.run(git.list_worktrees())
    except GitError as exc:
        print(f"Git unavailable: {exc}")
        raise SystemExit(1)
    print(
        json.dumps(
            [
                {
                    "path": entry.path,
                    "branch": entry.branch,
                    "commit": entry.commit,
                    "locked": entry.locked,
                    "prunable": entry.prunable,
                }
                for entry in entries
            ],
            indent=2,
        )
    )


def cmd_locks(args: argparse.Namespace) -> None:
    lock_dir = AgentSettings().resolved_lock_dir()
    payload = []
    if lock_dir.is_dir():
        for path in sorted(lock_dir.glob("*.lock")):
            candidate = FileLock(str(path))
            try:
                candidate.acquire(timeout=0)
            except Timeout:
                held = True
            else:
                held = False
                candidate.release()
            payload.append({"lock": str(path), "held": held})
    print(json.dumps(payload, indent=2))


def cmd_prune(args: argparse.Namespace) -> None:
    settings = AgentSettings()
    repo_path = settings.repo_path.expanduser()
    try:
        repo_lock = RepoLock(repo_path)
        repo_lock.try_lock()
    except LockHeldError:
        print("Agent is running on this repository; stop it before pruning")
        raise SystemExit(1)
    except LockError as exc:
        print(f"Git unavailable: {exc}")
        raise SystemExit(1)
    try:
        # The state is read under the lock so no job can appear after it.
        state = load_persisted(settings)
        manager = WorktreeManager(
            GitClient(repo_path),
            settings.resolved_worktree_base(),
            lock_dir=settings.resolved_lock_dir(),
        )
        tracked = [job.worktree_path for job in state.jobs.values() if job.worktree_path]
        try:
            removed = asyncio.run(manager.cleanup_orphaned(tracked))
        except GitError as exc:
            print(f"Git unavailable: {exc}")
            raise SystemExit(1)
    finally:
        repo_lock.unlock()
    print(json.dumps({"removed": removed, "tracked": len(tracked)}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="eksecd diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_jobs = sub.add_parser("jobs", help="List persisted jobs")
    p_jobs.add_argument("--json", action="store_true", help="Output JSON")
    p_jobs.set_defaults(func=cmd_jobs)

    p_queue = sub.add_parser("queue", help="List queued messages in dispatch order")
    p_queue.set_defaults(func=cmd_queue)

    p_worktrees = sub.add_parser("worktrees", help="List git worktrees of the repository")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_locks = sub.add_parser("locks", help="Show advisory lock files and whether they are held")
    p_locks.set_defaults(func=cmd_locks)

    p_prune = sub.add_parser("prune", help="Prune stale worktree metadata and untracked job worktrees")
    p_prune.set_defaults(func=cmd_prune)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
