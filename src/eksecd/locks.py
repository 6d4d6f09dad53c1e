"""Cross-process advisory locks keyed on filesystem paths."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_HOSTILE_REPLACEMENTS = (
    ("*", "-star-"),
    ("?", "-q-"),
    ('"', "-quote-"),
    ("<", "-lt-"),
    (">", "-gt-"),
    ("|", "-pipe-"),
)
_UNSAFE_CHARS = re.compile(r"[^\w\-.]", re.ASCII)


class LockError(RuntimeError):
    """Raised when a lock cannot be created, acquired or released."""


class LockHeldError(LockError):
    """Raised when another holder already owns the lock."""


def sanitize_path(path: str) -> str:
    """Turn ``path`` into a filename that is safe on every platform.

    >>> sanitize_path("/home/user/project")
    'home--user--project'
    """

    sanitized = path.replace("/", "--").replace("\\", "--").replace(":", "--")
    for char, replacement in _HOSTILE_REPLACEMENTS:
        sanitized = sanitized.replace(char, replacement)
    sanitized = _UNSAFE_CHARS.sub("-", sanitized)
    sanitized = sanitized.strip(".-")
    return sanitized or "default"


def lock_file_name(path: str) -> str:
    """Return ``<sanitized>-<digest>.lock`` for ``path``.

    Sanitizing alone maps ``/a/b`` and ``/a--b`` to the same name; the digest
    of the unsanitized path keeps their lock files apart.
    """

    digest = hashlib.sha256(path.encode("utf-8", "surrogateescape")).hexdigest()[:12]
    return f"{sanitize_path(path)}-{digest}.lock"


def default_lock_dir() -> Path:
    return Path(tempfile.gettempdir()) / "eksecd"


class _AdvisoryLock:
    """Non-blocking wrapper around :class:`filelock.FileLock`."""

    _held_message = "lock is already held"

    def __init__(self, lock_path: Path, *, log: logging.Logger | None = None) -> None:
        self._lock_path = lock_path
        self._lock = FileLock(str(lock_path))
        self._held = False
        self._log = log or logger

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def locked(self) -> bool:
        return self._held

    def try_lock(self) -> None:
        """Acquire the lock without waiting, raising :class:`LockHeldError` if taken."""

        if self._held:
            raise LockHeldError(self._held_message)
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            self._log.info("Lock already held", extra={"lock_path": str(self._lock_path)})
            raise LockHeldError(self._held_message) from None
        except OSError as exc:
            raise LockError(f"failed to acquire lock {self._lock_path}: {exc}") from exc
        self._held = True

    def unlock(self) -> None:
        """Release the lock and remove its file. Safe to call repeatedly."""

        if not self._held:
            return
        try:
            self._lock.release(force=True)
        except OSError as exc:
            raise LockError(f"failed to release lock {self._lock_path}: {exc}") from exc
        finally:
            self._held = False
        try:
            os.remove(self._lock_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LockError(f"failed to remove lock file {self._lock_path}: {exc}") from exc

    def __enter__(self):
        self.try_lock()
        return self

    def __exit__(self, *exc_info) -> None:
        self.unlock()


class PathLock(_AdvisoryLock):
    """Advisory lock for a directory, stored under the system temp directory."""

    def __init__(
        self,
        target: str | Path | None = None,
        *,
        lock_dir: str | Path | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        raw = os.getcwd() if target is None else os.fspath(target)
        self._target = os.path.normpath(os.path.abspath(raw))
        directory = Path(lock_dir) if lock_dir is not None else default_lock_dir()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"failed to create lock directory {directory}: {exc}") from exc
        self._held_message = (
            f"another eksecd instance is already running in this path: {self._target}"
        )
        super().__init__(directory / lock_file_name(self._target), log=log)

    @property
    def target(self) -> str:
        return self._target


class RepoLock(_AdvisoryLock):
    """Advisory lock stored inside a repository's ``.git`` directory."""

    def __init__(self, repo_path: str | Path, *, log: logging.Logger | None = None) -> None:
        repo = Path(repo_path)
        if not repo.exists():
            raise LockError(f"repository path does not exist: {repo}")
        git_dir = repo / ".git"
        if not git_dir.is_dir():
            raise LockError(f"not a git repository (no .git directory): {repo}")
        self._held_message = "another eksecd instance is already working on this repository"
        super().__init__(git_dir / "eksecd.lock", log=log)


__all__ = [
    "LockError",
    "LockHeldError",
    "PathLock",
    "RepoLock",
    "default_lock_dir",
    "lock_file_name",
    "sanitize_path",
]
