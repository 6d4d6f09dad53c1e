"""In-memory job state with atomic on-disk persistence."""

from __future__ import annotations

import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

from pydantic import ValidationError

from .models import Job, LoadedState, PersistedState, QueuedMessage, utc_now

logger = logging.getLogger(__name__)


class StateError(RuntimeError):
    """Base class for state store failures."""


class StatePersistError(StateError):
    """Raised when the state file cannot be written."""


class StateDecodeError(StateError):
    """Raised when the state file exists but cannot be parsed."""


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def write_state_file(path: Path, state: PersistedState) -> None:
    """Write ``state`` to a sibling temp file and atomically rename it over ``path``."""

    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StatePersistError(f"failed to persist state to {path}: {exc}") from exc


def load_state(path: str | Path) -> LoadedState:
    """Read the state file; a missing file yields ``loaded=False``."""

    state_path = Path(path)
    try:
        raw = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return LoadedState(loaded=False)
    except OSError as exc:
        raise StateError(f"failed to read state file {state_path}: {exc}") from exc
    try:
        persisted = PersistedState.model_validate_json(raw)
    except ValidationError as exc:
        raise StateDecodeError(f"failed to decode state file {state_path}: {exc}") from exc
    return LoadedState(
        agent_id=persisted.agent_id,
        jobs=persisted.jobs,
        queued_messages=persisted.queued_messages,
        loaded=True,
    )


class JobStateStore:
    """Thread-safe job and queued-message records backed by a JSON file.

    Every mutation rewrites the whole file while holding the write lock.
    Returned records are deep copies.
    """

    def __init__(
        self,
        agent_id: str,
        state_path: str | Path,
        *,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._agent_id = agent_id
        self._path = Path(state_path)
        self._clock = clock or utc_now
        self._log = log or logger
        self._jobs: dict[str, Job] = {}
        self._queued: dict[str, QueuedMessage] = {}
        self._lock = ReadWriteLock()

    @classmethod
    def restore(
        cls,
        state_path: str | Path,
        *,
        agent_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
        log: logging.Logger | None = None,
    ) -> "JobStateStore":
        """Build a store from the state file, keeping its agent id when present."""

        loaded = load_state(state_path)
        resolved_id = loaded.agent_id or agent_id or uuid.uuid4().hex
        store = cls(resolved_id, state_path, clock=clock, log=log)
        store._jobs = {key: job.model_copy(deep=True) for key, job in loaded.jobs.items()}
        store._queued = {
            key: message.model_copy(deep=True) for key, message in loaded.queued_messages.items()
        }
        (log or logger).info(
            "State restored",
            extra={
                "state_path": str(state_path),
                "loaded": loaded.loaded,
                "jobs": len(store._jobs),
                "queued_messages": len(store._queued),
            },
        )
        return store

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def state_path(self) -> Path:
        return self._path

    def _persist_locked(self) -> None:
        write_state_file(
            self._path,
            PersistedState(agent_id=self._agent_id, jobs=self._jobs, queued_messages=self._queued),
        )

    def update_job(self, job: Job) -> Job:
        """Insert or replace ``job``, stamping ``updated_at``."""

        record = job.model_copy(deep=True, update={"updated_at": self._clock()})
        with self._lock.write():
            self._jobs[record.job_id] = record
            self._persist_locked()
            return record.model_copy(deep=True)

    def remove_job(self, job_id: str) -> None:
        with self._lock.write():
            if job_id not in self._jobs:
                self._log.warning("Job not found for removal", extra={"job_id": job_id})
                return
            del self._jobs[job_id]
            self._persist_locked()

    def get_job(self, job_id: str) -> Job | None:
        with self._lock.read():
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def list_jobs(self) -> dict[str, Job]:
        with self._lock.read():
            return {key: job.model_copy(deep=True) for key, job in self._jobs.items()}

    def enqueue_message(self, message: QueuedMessage) -> QueuedMessage:
        record = message.model_copy(deep=True)
        with self._lock.write():
            self._queued[record.processed_message_id] = record
            self._persist_locked()
        self._log.info(
            "Queued message",
            extra={"processed_message_id": record.processed_message_id, "job_id": record.job_id},
        )
        return record.model_copy(deep=True)

    def dequeue_message(self, processed_message_id: str) -> None:
        with self._lock.write():
            if processed_message_id not in self._queued:
                self._log.warning(
                    "Queued message not found for removal",
                    extra={"processed_message_id": processed_message_id},
                )
                return
            del self._queued[processed_message_id]
            self._persist_locked()

    def list_queued_messages(self) -> list[QueuedMessage]:
        """Queued messages in enqueue order."""

        with self._lock.read():
            messages = [message.model_copy(deep=True) for message in self._queued.values()]
        return sorted(messages, key=lambda message: message.queued_at)

    def has_queued_message(self, processed_message_id: str) -> bool:
        with self._lock.read():
            return processed_message_id in self._queued


__all__ = [
    "JobStateStore",
    "ReadWriteLock",
    "StateDecodeError",
    "StateError",
    "StatePersistError",
    "load_state",
    "write_state_file",
]
