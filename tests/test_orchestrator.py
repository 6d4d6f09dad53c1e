from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import GitFixture, requires_git, run_git
from eksecd.config import AgentSettings
from eksecd.git import GitClient, GitHubClient
from eksecd.locks import LockHeldError, PathLock
from eksecd.orchestrator import (
    PR_FOOTER_MARKER,
    JobAbandonedError,
    JobFailedError,
    JobRequest,
    Orchestrator,
)
from eksecd.profiles import load_profiles
from eksecd.sandbox import ExecutionResult, FakeSandboxRunner, SandboxTimeoutError
from eksecd.state import (
    Job,
    JobMode,
    JobStateStore,
    JobStatus,
    MessageType,
    PersistedState,
    QueuedMessage,
    StatePersistError,
)
from eksecd.state.models import utc_now
from eksecd.state.store import write_state_file
from eksecd.worktrees import WorktreeManager

COMMIT_MESSAGE = "Add generated changes"
PR_TITLE = "Add generated changes"
PR_BODY = "This pull request adds generated files."


def stream(*payloads: dict) -> str:
    return "\n".join(json.dumps(payload) for payload in payloads) + "\n"


def assistant_output(text: str, session_id: str = "sess-1") -> str:
    return stream(
        {"type": "system", "subtype": "init", "session_id": session_id},
        {
            "type": "assistant",
            "message": {"id": f"msg-{abs(hash(text))}", "content": [{"type": "text", "text": text}]},
            "session_id": session_id,
        },
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": text,
            "duration_ms": 1500,
            "total_cost_usd": 0.1,
            "session_id": session_id,
        },
    )


class FakeAssistant:
    """Stands in for the assistant CLI: edits the worktree and answers commit/PR prompts."""

    def __init__(self, *, edits: bool = True) -> None:
        self.edits = edits
        self.turns: list[tuple[str, tuple[str, ...]]] = []
        self.failure: ExecutionResult | None = None
        self.timeout = False

    def __call__(self, name: str, args: tuple[str, ...], cwd: Path | None) -> ExecutionResult:
        prompt = args[args.index("-p") + 1]
        if prompt.startswith("Write a concise git commit message"):
            return ExecutionResult(args, 0, assistant_output(COMMIT_MESSAGE))
        if prompt.startswith("Write a short pull request title"):
            return ExecutionResult(args, 0, assistant_output(PR_TITLE))
        if prompt.startswith("Write a pull request description"):
            return ExecutionResult(args, 0, assistant_output(PR_BODY))

        self.turns.append((prompt, args))
        if self.timeout:
            raise SandboxTimeoutError((name, *args), 5.0, "partial")
        if self.failure is not None:
            return self.failure
        if self.edits and cwd is not None:
            (cwd / f"change-{len(self.turns)}.txt").write_text(prompt + "\n", encoding="utf-8")
        return ExecutionResult(args, 0, assistant_output(f"Handled: {prompt}"))


class FakeGitHub(GitHubClient):
    """Records pull requests in memory, keyed by the worktree's branch."""

    def __init__(self, path: str | Path, prs: dict[str, dict[str, str]] | None = None) -> None:
        super().__init__(path)
        self.prs = {} if prs is None else prs

    def for_worktree(self, worktree_path: str | Path) -> "FakeGitHub":
        return FakeGitHub(worktree_path, self.prs)

    def _branch(self) -> str:
        return run_git(Path(self._path), "branch", "--show-current")

    async def create_pull_request(self, title: str, body: str, base_branch: str) -> str:
        url = f"https://github.com/acme/widgets/pull/{len(self.prs) + 1}"
        self.prs[self._branch()] = {"title": title, "body": body, "base": base_branch, "url": url}
        return url

    async def has_existing_pr(self, branch: str) -> bool:
        return branch in self.prs

    async def get_pr_url(self, branch: str) -> str:
        return self.prs[branch]["url"]

    async def get_pr_description(self, branch: str) -> str:
        return self.prs[branch]["body"]

    async def update_pr_description(self, branch: str, description: str) -> None:
        self.prs[branch]["body"] = description


def build(
    fixture: GitFixture,
    assistant: FakeAssistant,
    *,
    github: FakeGitHub | None = None,
    **settings: object,
) -> tuple[Orchestrator, FakeSandboxRunner, FakeGitHub]:
    runner = FakeSandboxRunner(handler=assistant)
    github = github or FakeGitHub(fixture.repo)
    orchestrator = Orchestrator(
        AgentSettings(_env_file=None, **settings),
        state=JobStateStore.restore(fixture.root / "state.json", agent_id="agent-test"),
        worktrees=WorktreeManager(
            GitClient(fixture.repo), fixture.root / "worktrees", lock_dir=fixture.root / "locks"
        ),
        runner=runner,
        profiles=load_profiles([]),
        github=github,
    )
    return orchestrator, runner, github


def start_request(job_id: str = "job-1", message_id: str = "msg-1", **overrides: object) -> JobRequest:
    values: dict = {
        "job_id": job_id,
        "processed_message_id": message_id,
        "message": "Add a greeting file",
        "message_link": "https://chat.example.com/m/1",
    }
    values.update(overrides)
    return JobRequest(**values)


@requires_git
def test_start_conversation_commits_pushes_and_opens_pr(git_repo: GitFixture) -> None:
    assistant = FakeAssistant()
    orchestrator, runner, github = build(git_repo, assistant)

    outcome = asyncio.run(orchestrator.start_conversation(start_request()))

    assert outcome.reply == "Handled: Add a greeting file"
    assert outcome.session_id == "sess-1"
    assert outcome.branch.startswith("eksecd/")
    assert outcome.pr_url == "https://github.com/acme/widgets/pull/1"
    assert outcome.cost == pytest.approx(0.1)

    job = orchestrator.state.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.session_id == "sess-1"
    assert job.pull_request_id == "1"
    assert job.processed_message_id == "msg-1"
    assert orchestrator.state.list_queued_messages() == []

    log = run_git(git_repo.remote, "log", "--format=%s", outcome.branch)
    assert log.splitlines()[0] == COMMIT_MESSAGE

    pr = github.prs[outcome.branch]
    assert pr["title"] == PR_TITLE
    assert pr["base"] == "main"
    assert pr["body"].startswith(PR_BODY)
    assert f"{PR_FOOTER_MARKER} from [this conversation](https://chat.example.com/m/1)" in pr["body"]

    ((_, first_args),) = assistant.turns
    assert first_args[:2] == ("--permission-mode", "acceptEdits")
    assert "--resume" not in first_args
    # Main turn, commit message, PR title and PR body.
    assert len(runner.invocations) == 4


@requires_git
def test_ask_mode_never_commits(git_repo: GitFixture) -> None:
    assistant = FakeAssistant(edits=False)
    orchestrator, runner, github = build(git_repo, assistant)

    outcome = asyncio.run(orchestrator.start_conversation(start_request(mode=JobMode.ASK)))

    assert outcome.pr_url == ""
    assert github.prs == {}
    assert len(runner.invocations) == 1
    args = runner.invocations[0]
    assert args[args.index("--permission-mode") + 1] == "plan"
    assert "Do not modify" in args[args.index("--append-system-prompt") + 1]
    assert orchestrator.state.get_job("job-1").mode is JobMode.ASK


@requires_git
def test_no_changes_skips_commit(git_repo: GitFixture) -> None:
    orchestrator, runner, github = build(git_repo, FakeAssistant(edits=False))

    outcome = asyncio.run(orchestrator.start_conversation(start_request()))

    assert outcome.pr_url == ""
    assert len(runner.invocations) == 1
    assert orchestrator.state.get_job("job-1").status is JobStatus.COMPLETED


@requires_git
def test_processed_message_is_skipped(git_repo: GitFixture) -> None:
    orchestrator, runner, _ = build(git_repo, FakeAssistant(edits=False))

    async def scenario() -> None:
        await orchestrator.start_conversation(start_request())
        again = await orchestrator.start_conversation(start_request())
        assert again.skipped
        assert again.session_id == "sess-1"

    asyncio.run(scenario())
    assert len(runner.invocations) == 1
    assert orchestrator.state.list_queued_messages() == []


@requires_git
def test_continue_conversation_resumes_and_updates_pr(git_repo: GitFixture) -> None:
    assistant = FakeAssistant()
    orchestrator, _, github = build(git_repo, assistant)

    async def scenario() -> None:
        first = await orchestrator.start_conversation(start_request())
        github.prs[first.branch]["body"] = "Edited by a human"
        second = await orchestrator.continue_conversation(
            start_request(
                message_id="msg-2",
                message="Also add a farewell",
                message_type=MessageType.USER_MESSAGE,
            )
        )
        assert second.branch == first.branch
        assert second.pr_url == first.pr_url
        assert second.reply == "Handled: Also add a farewell"

    asyncio.run(scenario())

    _, resumed_args = assistant.turns[-1]
    assert resumed_args[resumed_args.index("--resume") + 1] == "sess-1"
    job = orchestrator.state.get_job("job-1")
    assert job.processed_message_id == "msg-2"
    assert job.status is JobStatus.COMPLETED
    (pr,) = github.prs.values()
    assert pr["body"].startswith("Edited by a human")
    assert PR_FOOTER_MARKER in pr["body"]
    assert len(run_git(git_repo.remote, "log", "--format=%s", job.branch_name).splitlines()) == 3


@requires_git
def test_continue_unknown_job_fails(git_repo: GitFixture) -> None:
    orchestrator, _, _ = build(git_repo, FakeAssistant())
    request = start_request(job_id="ghost", message_type=MessageType.USER_MESSAGE)

    with pytest.raises(JobFailedError, match="job not found"):
        asyncio.run(orchestrator.dispatch(request))


@requires_git
def test_deleted_remote_branch_abandons_job(git_repo: GitFixture) -> None:
    orchestrator, _, _ = build(git_repo, FakeAssistant())

    async def scenario() -> None:
        first = await orchestrator.start_conversation(start_request())
        run_git(git_repo.repo, "push", "origin", "--delete", first.branch)
        with pytest.raises(JobAbandonedError):
            await orchestrator.continue_conversation(
                start_request(message_id="msg-2", message_type=MessageType.USER_MESSAGE)
            )
        assert not Path(orchestrator.worktrees.path_for("job-1")).exists()
        assert not await orchestrator.git.branch_exists(first.branch)

    asyncio.run(scenario())
    assert orchestrator.state.get_job("job-1") is None


@requires_git
def test_failed_session_leaves_job_in_progress(git_repo: GitFixture) -> None:
    assistant = FakeAssistant()
    assistant.failure = ExecutionResult(("claude",), 1, "Error: credit balance too low\n")
    orchestrator, _, _ = build(git_repo, assistant)

    with pytest.raises(JobFailedError) as excinfo:
        asyncio.run(orchestrator.start_conversation(start_request()))

    assert "credit balance too low" in str(excinfo.value)
    assert orchestrator.state.get_job("job-1").status is JobStatus.IN_PROGRESS


@requires_git
def test_non_zero_exit_with_successful_result_is_accepted(git_repo: GitFixture) -> None:
    assistant = FakeAssistant(edits=False)
    assistant.failure = ExecutionResult(("claude",), 1, assistant_output("Finished anyway"))
    orchestrator, _, _ = build(git_repo, assistant)

    outcome = asyncio.run(orchestrator.start_conversation(start_request()))

    assert outcome.reply == "Finished anyway"


@requires_git
def test_session_timeout_is_reported(git_repo: GitFixture) -> None:
    assistant = FakeAssistant()
    assistant.timeout = True
    orchestrator, _, _ = build(git_repo, assistant)

    with pytest.raises(JobFailedError, match="timed out after 5s") as excinfo:
        asyncio.run(orchestrator.start_conversation(start_request()))
    assert excinfo.value.output == "partial"


@requires_git
def test_submit_runs_in_background(git_repo: GitFixture) -> None:
    orchestrator, _, _ = build(git_repo, FakeAssistant(edits=False), MAX_CONCURRENCY=2)

    async def scenario() -> None:
        orchestrator.submit(start_request("job-a", "msg-a"))
        orchestrator.submit(start_request("job-b", "msg-b"))
        # Missing jobs are logged, not raised.
        orchestrator.submit(start_request("ghost", "msg-c", message_type=MessageType.USER_MESSAGE))
        await orchestrator.wait_idle()

    asyncio.run(scenario())

    assert orchestrator.state.get_job("job-a").status is JobStatus.COMPLETED
    assert orchestrator.state.get_job("job-b").status is JobStatus.COMPLETED
    assert [message.processed_message_id for message in orchestrator.state.list_queued_messages()] == [
        "msg-c"
    ]



@requires_git
def test_background_failures_do_not_stop_other_jobs(
    git_repo: GitFixture, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    orchestrator, _, _ = build(git_repo, FakeAssistant(edits=False), MAX_CONCURRENCY=3)
    store = orchestrator.state
    update_job = store.update_job

    def flaky_update(job: Job) -> Job:
        if job.job_id == "job-disk":
            raise StatePersistError("disk full")
        if job.job_id == "job-bug":
            raise ValueError("unexpected")
        return update_job(job)

    monkeypatch.setattr(store, "update_job", flaky_update)

    async def scenario() -> None:
        orchestrator.submit(start_request("job-disk", "msg-disk"))
        orchestrator.submit(start_request("job-bug", "msg-bug"))
        orchestrator.submit(start_request("job-ok", "msg-ok"))
        await orchestrator.wait_idle()

    with caplog.at_level("ERROR", logger="eksecd.orchestrator"):
        asyncio.run(scenario())

    assert store.get_job("job-ok").status is JobStatus.COMPLETED
    assert store.get_job("job-disk") is None
    assert "Unexpected error in background job" in caplog.text
    assert {message.processed_message_id for message in store.list_queued_messages()} == {
        "msg-disk",
        "msg-bug",
    }


@requires_git
def test_new_worktree_is_not_touched_while_leased_elsewhere(git_repo: GitFixture) -> None:
    orchestrator, runner, _ = build(git_repo, FakeAssistant())
    path = orchestrator.worktrees.path_for("job-1")
    holder = PathLock(path, lock_dir=git_repo.root / "locks")
    holder.try_lock()
    try:
        with pytest.raises(LockHeldError):
            asyncio.run(orchestrator.start_conversation(start_request()))
    finally:
        holder.unlock()

    assert not path.exists()
    assert runner.invocations == []
    assert orchestrator.state.get_job("job-1") is None
    assert orchestrator.state.has_queued_message("msg-1")


@requires_git
def test_complete_job_releases_worktree(git_repo: GitFixture) -> None:
    orchestrator, _, _ = build(git_repo, FakeAssistant(edits=False))

    async def scenario() -> None:
        outcome = await orchestrator.start_conversation(start_request())
        await orchestrator.complete_job("job-1")
        assert not orchestrator.worktrees.path_for("job-1").exists()
        assert not await orchestrator.git.branch_exists(outcome.branch)
        await orchestrator.complete_job("job-1")

    asyncio.run(scenario())
    assert orchestrator.state.get_job("job-1") is None


@requires_git
def test_recover_redispatches_and_prunes(git_repo: GitFixture) -> None:
    assistant = FakeAssistant(edits=False)
    orchestrator, _, _ = build(git_repo, assistant)
    resumable = asyncio.run(orchestrator.start_conversation(start_request("job-resume", "msg-r")))

    state_path = git_repo.root / "state.json"
    persisted = PersistedState.model_validate_json(state_path.read_text(encoding="utf-8"))
    now = utc_now()
    persisted.jobs["job-resume"] = persisted.jobs["job-resume"].model_copy(
        update={"status": JobStatus.IN_PROGRESS, "updated_at": now}
    )
    persisted.jobs["job-stale"] = Job(
        job_id="job-stale", branch_name=resumable.branch, updated_at=now - timedelta(days=2)
    )
    persisted.jobs["job-gone"] = Job(job_id="job-gone", branch_name="eksecd/missing", updated_at=now)
    persisted.jobs["job-done"] = Job(job_id="job-done", status=JobStatus.COMPLETED, updated_at=now)
    persisted.queued_messages["msg-q"] = QueuedMessage(
        processed_message_id="msg-q",
        job_id="job-queued",
        message_type=MessageType.START_CONVERSATION,
        mode=JobMode.ASK,
        message="What does this repo do?",
        queued_at=now,
    )
    write_state_file(state_path, persisted)

    restarted, _, _ = build(git_repo, assistant)

    async def scenario():
        report = await restarted.recover()
        await restarted.wait_idle()
        return report

    report = asyncio.run(scenario())

    assert report.recovered == ["job-resume"]
    assert sorted(report.removed) == ["job-gone", "job-stale"]
    assert report.queued == ["msg-q"]

    jobs = restarted.state.list_jobs()
    assert set(jobs) == {"job-resume", "job-done", "job-queued"}
    assert jobs["job-resume"].status is JobStatus.COMPLETED
    assert jobs["job-queued"].status is JobStatus.COMPLETED
    assert jobs["job-queued"].mode is JobMode.ASK
    assert restarted.state.list_queued_messages() == []

    resumed_prompt, resumed_args = assistant.turns[1]
    assert resumed_prompt == "Add a greeting file"
    assert "--resume" in resumed_args
