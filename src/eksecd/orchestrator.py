"""Job pipeline tying worktrees, the sandbox, the parser and the state store together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable

from .config import AgentSettings
from .git.client import GitClient, GitError, RemoteBranchDeletedError
from .git.github import GitHubClient, extract_pr_id
from .locks import LockHeldError
from .messages import (
    NoReplyError,
    extract_reply,
    extract_session_id,
    find_result,
    parse_output,
)
from .profiles import AgentProfile, ProfileLoadError
from .sandbox.runner import SandboxError, SandboxRunner, SandboxTimeoutError
from .state.models import Job, JobMode, JobStatus, MessageType, QueuedMessage, utc_now
from .state.store import JobStateStore, StateError
from .worktrees.manager import WorktreeManager

logger = logging.getLogger(__name__)

STALE_JOB_AGE = timedelta(hours=24)
PR_FOOTER_MARKER = "Generated with eksecd"

ASK_MODE_INSTRUCTIONS = (
    "You are answering a question about this repository. Do not modify, create or delete files."
)
COMMIT_MESSAGE_PROMPT = (
    "Write a concise git commit message (a subject line of at most 72 characters, optionally "
    "followed by a blank line and a short body) describing the changes you made on branch {branch}. "
    "Reply with the commit message only."
)
PR_TITLE_PROMPT = (
    "Write a short pull request title for the changes on branch {branch}. Reply with the title only."
)
PR_BODY_PROMPT = (
    "Write a pull request description in Markdown summarizing the changes on branch {branch}. "
    "Reply with the description only.{template}"
)


class JobFailedError(RuntimeError):
    """Raised when a job cannot be carried to completion."""

    def __init__(self, job_id: str, message: str, *, output: str = "") -> None:
        super().__init__(f"job {job_id}: {message}")
        self.job_id = job_id
        self.reason = message
        self.output = output


class JobAbandonedError(JobFailedError):
    """Raised when a job is dropped because its remote branch was deleted."""


@dataclass(slots=True)
class JobRequest:
    job_id: str
    processed_message_id: str
    message: str
    message_link: str = ""
    message_type: MessageType = MessageType.START_CONVERSATION
    mode: JobMode = JobMode.EXECUTE
    profile_id: str | None = None


@dataclass(slots=True)
class JobOutcome:
    job_id: str
    reply: str = ""
    session_id: str = ""
    branch: str = ""
    pr_url: str = ""
    cost: float = 0.0
    duration_ms: int = 0
    is_error: bool = False
    skipped: bool = False


@dataclass(slots=True)
class SessionResult:
    reply: str
    session_id: str
    cost: float = 0.0
    duration_ms: int = 0
    is_error: bool = False


@dataclass(slots=True)
class RecoveryReport:
    recovered: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)


class Orchestrator:
    """Run jobs one at a time per job id and at most ``max_concurrency`` overall."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        state: JobStateStore,
        worktrees: WorktreeManager,
        runner: SandboxRunner,
        profiles: dict[str, AgentProfile],
        github: GitHubClient | None = None,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._state = state
        self._worktrees = worktrees
        self._runner = runner
        self._profiles = profiles
        self._github = github or GitHubClient(worktrees.git.path)
        self._clock = clock or utc_now
        self._log = log or logger
        self._slots = asyncio.Semaphore(settings.max_concurrency)
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def git(self) -> GitClient:
        return self._worktrees.git

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def state(self) -> JobStateStore:
        return self._state

    def profile_for(self, profile_id: str | None = None) -> AgentProfile:
        key = profile_id or self._settings.default_profile
        try:
            return self._profiles[key]
        except KeyError as exc:
            raise ProfileLoadError(f"Profile '{key}' is not configured") from exc

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = self._job_locks[job_id] = asyncio.Lock()
        return lock

    # Intake

    def submit(self, request: JobRequest) -> asyncio.Task[None]:
        """Persist ``request`` and process it in the background."""

        self._enqueue(request)
        return self._spawn(self.dispatch(request, enqueue=False))

    async def dispatch(self, request: JobRequest, *, enqueue: bool = True) -> JobOutcome:
        if request.message_type is MessageType.USER_MESSAGE:
            return await self.continue_conversation(request, enqueue=enqueue)
        return await self.start_conversation(request, enqueue=enqueue)

    def _enqueue(self, request: JobRequest) -> None:
        if self._state.has_queued_message(request.processed_message_id):
            return
        self._state.enqueue_message(
            QueuedMessage(
                processed_message_id=request.processed_message_id,
                job_id=request.job_id,
                message_type=request.message_type,
                message=request.message,
                message_link=request.message_link,
                mode=request.mode,
                queued_at=self._clock(),
            )
        )

    def _spawn(self, coro: Awaitable[JobOutcome]) -> asyncio.Task[None]:
        async def _guarded() -> None:
            try:
                await coro
            except (
                JobFailedError, GitError, SandboxError, LockHeldError, ProfileLoadError, StateError
            ) as exc:
                self._log.error("Job failed", extra={"error": str(exc)})
            except Exception:
                self._log.exception("Unexpected error in background job")

        task = asyncio.create_task(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background job spawned so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _already_processed(self, request: JobRequest) -> bool:
        job = self._state.get_job(request.job_id)
        return (
            job is not None
            and job.status is JobStatus.COMPLETED
            and job.processed_message_id == request.processed_message_id
        )

    def _skip(self, request: JobRequest) -> JobOutcome:
        self._log.info(
            "Message already processed, skipping",
            extra={"job_id": request.job_id, "processed_message_id": request.processed_message_id},
        )
        if self._state.has_queued_message(request.processed_message_id):
            self._state.dequeue_message(request.processed_message_id)
        job = self._state.get_job(request.job_id)
        return JobOutcome(
            job_id=request.job_id,
            session_id=job.session_id if job else "",
            branch=job.branch_name if job else "",
            skipped=True,
        )

    # Conversations

    async def start_conversation(self, request: JobRequest, *, enqueue: bool = True) -> JobOutcome:
        """Give the job a fresh worktree and run the first assistant turn."""

        if enqueue:
            self._enqueue(request)
        async with self._job_lock(request.job_id), self._slots:
            if self._already_processed(request):
                return self._skip(request)
            profile = self.profile_for(request.profile_id)
            async with self._worktrees.lease(self._worktrees.path_for(request.job_id)):
                branch, path = await self._worktrees.prepare_new_worktree(request.job_id)
                job = self._begin(request, branch=branch, path=path, session_id="")
                return await self._run_turn(request, job, profile, path)

    async def continue_conversation(self, request: JobRequest, *, enqueue: bool = True) -> JobOutcome:
        """Resume the job's assistant session inside its existing worktree.

        Raises :class:`JobAbandonedError` when the job's remote branch was
        deleted; the job and its worktree are removed in that case.
        """

        if enqueue:
            self._enqueue(request)
        async with self._job_lock(request.job_id), self._slots:
            if self._already_processed(request):
                return self._skip(request)
            existing = self._state.get_job(request.job_id)
            if existing is None:
                raise JobFailedError(
                    request.job_id, "job not found; the conversation may have been started elsewhere"
                )
            if not existing.session_id:
                raise JobFailedError(request.job_id, "no assistant session recorded for this job")
            profile = self.profile_for(request.profile_id)
            path = Path(existing.worktree_path) if existing.worktree_path else self._worktrees.path_for(
                request.job_id
            )
            async with self._worktrees.lease(path):
                try:
                    await self._worktrees.prepare_existing_worktree(path)
                except RemoteBranchDeletedError as exc:
                    await self._abandon(existing, path)
                    raise JobAbandonedError(
                        request.job_id,
                        f"remote branch {existing.branch_name!r} was deleted (likely merged); "
                        "start a new conversation",
                    ) from exc
                job = self._begin(
                    request,
                    branch=existing.branch_name,
                    path=path,
                    session_id=existing.session_id,
                    pull_request_id=existing.pull_request_id,
                )
                return await self._run_turn(request, job, profile, path)

    def _begin(
        self,
        request: JobRequest,
        *,
        branch: str,
        path: Path,
        session_id: str,
        pull_request_id: str = "",
    ) -> Job:
        job = self._state.update_job(
            Job(
                job_id=request.job_id,
                branch_name=branch,
                session_id=session_id,
                pull_request_id=pull_request_id,
                last_message=request.message,
                processed_message_id=request.processed_message_id,
                message_link=request.message_link,
                status=JobStatus.IN_PROGRESS,
                mode=request.mode,
                worktree_path=str(path),
            )
        )
        if self._state.has_queued_message(request.processed_message_id):
            self._state.dequeue_message(request.processed_message_id)
        return job

    async def _run_turn(self, request: JobRequest, job: Job, profile: AgentProfile, path: Path) -> JobOutcome:
        session = await self._run_session(
            request.job_id,
            profile,
            request.message,
            cwd=path,
            session_id=job.session_id or None,
            read_only=request.mode is JobMode.ASK,
        )
        session_id = session.session_id or job.session_id
        job = self._state.update_job(job.model_copy(update={"session_id": session_id}))

        pr_url = ""
        if request.mode is JobMode.EXECUTE:
            pr_url = await self._auto_commit(request, job, profile, path, session_id)
            if pr_url:
                job = job.model_copy(update={"pull_request_id": extract_pr_id(pr_url)})
        else:
            self._log.info("Skipping auto-commit in ask mode", extra={"job_id": request.job_id})

        self._state.update_job(job.model_copy(update={"status": JobStatus.COMPLETED}))
        self._log.info(
            "Job turn completed",
            extra={"job_id": request.job_id, "session_id": session_id, "pr_url": pr_url},
        )
        return JobOutcome(
            job_id=request.job_id,
            reply=session.reply,
            session_id=session_id,
            branch=job.branch_name,
            pr_url=pr_url,
            cost=session.cost,
            duration_ms=session.duration_ms,
            is_error=session.is_error,
        )

    async def _run_session(
        self,
        job_id: str,
        profile: AgentProfile,
        prompt: str,
        *,
        cwd: Path,
        session_id: str | None,
        read_only: bool,
    ) -> SessionResult:
        instructions = f"Work only inside the directory {cwd}."
        if read_only:
            instructions = f"{ASK_MODE_INSTRUCTIONS}\n{instructions}"
        args = profile.build_args(prompt, session_id, read_only=read_only, system_prompt=instructions)
        try:
            result = await self._runner.run(profile.executable, args, cwd=cwd, check=False)
        except SandboxTimeoutError as exc:
            raise JobFailedError(
                job_id, f"assistant session timed out after {exc.timeout:g}s", output=exc.output
            ) from exc
        except SandboxError as exc:
            raise JobFailedError(job_id, f"failed to run assistant: {exc}", output=exc.output) from exc

        messages = parse_output(result.output)
        outcome = find_result(messages)
        try:
            reply = extract_reply(messages)
        except NoReplyError:
            reply = ""

        if not result.ok:
            if outcome is not None and not outcome.is_error and reply:
                self._log.warning(
                    "Assistant exited non-zero but reported success",
                    extra={"job_id": job_id, "returncode": result.returncode},
                )
            else:
                detail = reply or result.output.strip() or f"exit status {result.returncode}"
                raise JobFailedError(job_id, f"assistant failed: {detail}", output=result.output)
        if not reply:
            raise JobFailedError(job_id, "assistant produced no reply", output=result.output)

        return SessionResult(
            reply=reply,
            session_id=extract_session_id(messages),
            cost=outcome.total_cost_usd if outcome else 0.0,
            duration_ms=outcome.duration_ms if outcome else 0,
            is_error=outcome.is_error if outcome else False,
        )

    async def _ask(self, job_id: str, profile: AgentProfile, session_id: str, prompt: str, cwd: Path) -> str:
        session = await self._run_session(
            job_id, profile, prompt, cwd=cwd, session_id=session_id, read_only=False
        )
        return session.reply.strip()

    # Git integration

    async def _auto_commit(
        self, request: JobRequest, job: Job, profile: AgentProfile, path: Path, session_id: str
    ) -> str:
        """Commit, push and open or update a pull request. Returns the PR URL or ``""``."""

        git = self.git.for_worktree(path)
        if not await git.has_uncommitted_changes():
            self._log.info("No uncommitted changes, skipping auto-commit", extra={"job_id": job.job_id})
            return ""

        branch = job.branch_name
        message = await self._ask(
            job.job_id, profile, session_id, COMMIT_MESSAGE_PROMPT.format(branch=branch), path
        )
        await git.add_all()
        await git.commit(message)
        await git.push_branch(branch)
        self._log.info("Pushed changes", extra={"job_id": job.job_id, "branch": branch})

        github = self._github.for_worktree(path)
        footer = self._pr_footer(request.message_link)
        if await github.has_existing_pr(branch):
            pr_url = await github.get_pr_url(branch)
            await self._restore_footer(github, branch, footer)
            return pr_url

        template = git.find_pr_template()
        template_hint = f"\n\nFollow this template:\n{template}" if template else ""
        # One session, so the prompts run one after another.
        title = await self._ask(job.job_id, profile, session_id, PR_TITLE_PROMPT.format(branch=branch), path)
        body = await self._ask(
            job.job_id,
            profile,
            session_id,
            PR_BODY_PROMPT.format(branch=branch, template=template_hint),
            path,
        )
        default_branch = await git.get_default_branch()
        return await github.create_pull_request(title, f"{body}\n\n{footer}", default_branch)

    @staticmethod
    def _pr_footer(message_link: str) -> str:
        if message_link:
            return f"---\n{PR_FOOTER_MARKER} from [this conversation]({message_link})"
        return f"---\n{PR_FOOTER_MARKER}"

    async def _restore_footer(self, github: GitHubClient, branch: str, footer: str) -> None:
        try:
            description = await github.get_pr_description(branch)
            if PR_FOOTER_MARKER not in description:
                await github.update_pr_description(branch, f"{description.rstrip()}\n\n{footer}")
        except GitError as exc:
            self._log.warning(
                "Failed to restore PR description footer", extra={"branch": branch, "error": str(exc)}
            )

    async def _abandon(self, job: Job, path: Path) -> None:
        try:
            await self._worktrees.cleanup_job_worktree(path, job.branch_name)
        except GitError as exc:
            self._log.error(
                "Failed to clean up abandoned job worktree",
                extra={"job_id": job.job_id, "error": str(exc)},
            )
        self._state.remove_job(job.job_id)
        self._log.warning(
            "Job abandoned, remote branch deleted",
            extra={"job_id": job.job_id, "branch": job.branch_name},
        )

    # Lifecycle

    async def complete_job(self, job_id: str) -> None:
        """Forget a finished job and release its worktree."""

        async with self._job_lock(job_id):
            job = self._state.get_job(job_id)
            if job is None:
                self._log.warning("Job not found for completion", extra={"job_id": job_id})
                return
            if job.worktree_path:
                try:
                    await self._worktrees.cleanup_job_worktree(job.worktree_path, job.branch_name)
                except GitError as exc:
                    self._log.warning(
                        "Failed to clean up job worktree", extra={"job_id": job_id, "error": str(exc)}
                    )
            self._state.remove_job(job_id)
        self._job_locks.pop(job_id, None)

    async def recover(self) -> RecoveryReport:
        """Re-dispatch interrupted jobs and persisted queued messages.

        In-progress jobs older than a day, or whose branch is gone, are
        dropped. The rest run again in the background; call
        :meth:`wait_idle` to wait for them.
        """

        report = RecoveryReport()
        now = self._clock()
        for job_id, job in self._state.list_jobs().items():
            if job.status is not JobStatus.IN_PROGRESS:
                continue
            age = now - job.updated_at
            if age > STALE_JOB_AGE:
                self._log.info("Removing stale job", extra={"job_id": job_id, "age": str(age)})
                self._state.remove_job(job_id)
                report.removed.append(job_id)
                continue
            try:
                exists = await self.git.branch_exists(job.branch_name) if job.branch_name else False
            except GitError as exc:
                self._log.error(
                    "Failed to check job branch", extra={"job_id": job_id, "error": str(exc)}
                )
                continue
            if not exists:
                self._log.warning(
                    "Job branch no longer exists, removing job",
                    extra={"job_id": job_id, "branch": job.branch_name},
                )
                self._state.remove_job(job_id)
                report.removed.append(job_id)
                continue
            message_type = MessageType.USER_MESSAGE if job.session_id else MessageType.START_CONVERSATION
            self._spawn(
                self.dispatch(
                    JobRequest(
                        job_id=job_id,
                        processed_message_id=job.processed_message_id,
                        message=job.last_message,
                        message_link=job.message_link,
                        message_type=message_type,
                        mode=job.mode,
                    ),
                    enqueue=False,
                )
            )
            report.recovered.append(job_id)

        for queued in self._state.list_queued_messages():
            self._spawn(
                self.dispatch(
                    JobRequest(
                        job_id=queued.job_id,
                        processed_message_id=queued.processed_message_id,
                        message=queued.message,
                        message_link=queued.message_link,
                        message_type=queued.message_type,
                        mode=queued.mode,
                    ),
                    enqueue=False,
                )
            )
            report.queued.append(queued.processed_message_id)

        self._log.info(
            "Job recovery finished",
            extra={
                "recovered": len(report.recovered),
                "removed": len(report.removed),
                "queued": len(report.queued),
            },
        )
        return report


__all__ = [
    "JobAbandonedError",
    "JobFailedError",
    "JobOutcome",
    "JobRequest",
    "Orchestrator",
    "RecoveryReport",
    "SessionResult",
]
