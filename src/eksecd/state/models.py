"""Persisted job and queue records."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class JobMode(str, enum.Enum):
    """Whether the assistant may modify the worktree."""

    EXECUTE = "execute"
    ASK = "ask"


class MessageType(str, enum.Enum):
    START_CONVERSATION = "start_conversation_v1"
    USER_MESSAGE = "user_message_v1"


class Job(BaseModel):
    """State of one conversation between a remote requester and the assistant."""

    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    job_id: str = Field(..., description="Stable identifier supplied by the job source.")
    branch_name: str = Field(default="", description="Branch checked out in the job's worktree.")
    session_id: str = Field(default="", description="Assistant session or thread id; empty until known.")
    pull_request_id: str = Field(default="", description="Pull-request number, empty until a PR exists.")
    last_message: str = Field(default="", description="Last prompt sent to the assistant.")
    processed_message_id: str = Field(default="", description="Upstream chat message being handled.")
    message_link: str = Field(default="", description="Link back to the upstream chat message.")
    status: JobStatus = Field(default=JobStatus.IN_PROGRESS)
    mode: JobMode = Field(default=JobMode.EXECUTE)
    worktree_path: str = Field(default="", description="Worktree leased by this job.")
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("job_id")
    @classmethod
    def _require_job_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("job_id must not be empty")
        return normalized

    @field_validator("updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class QueuedMessage(BaseModel):
    """A message accepted for processing but not dispatched yet."""

    model_config = ConfigDict(extra="ignore")

    processed_message_id: str
    job_id: str
    message_type: MessageType = MessageType.USER_MESSAGE
    mode: JobMode = JobMode.EXECUTE
    message: str = ""
    message_link: str = ""
    queued_at: datetime = Field(default_factory=utc_now)

    @field_validator("queued_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class PersistedState(BaseModel):
    """The document written to the state file."""

    model_config = ConfigDict(extra="ignore")

    agent_id: str = ""
    jobs: dict[str, Job] = Field(default_factory=dict)
    queued_messages: dict[str, QueuedMessage] = Field(default_factory=dict)


class LoadedState(PersistedState):
    loaded: bool = False


__all__ = [
    "Job",
    "JobMode",
    "JobStatus",
    "LoadedState",
    "MessageType",
    "PersistedState",
    "QueuedMessage",
    "utc_now",
]
