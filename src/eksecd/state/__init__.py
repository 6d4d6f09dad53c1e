"""Durable job and queued-message state."""

from .models import Job, JobMode, JobStatus, LoadedState, MessageType, PersistedState, QueuedMessage
from .store import (
    JobStateStore,
    StateDecodeError,
    StateError,
    StatePersistError,
    load_state,
)

__all__ = [
    "Job",
    "JobMode",
    "JobStateStore",
    "JobStatus",
    "LoadedState",
    "MessageType",
    "PersistedState",
    "QueuedMessage",
    "StateDecodeError",
    "StateError",
    "StatePersistError",
    "load_state",
]
