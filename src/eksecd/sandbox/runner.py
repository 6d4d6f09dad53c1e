"""Async, deadline-bound execution of sandboxed commands."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

from .utils import SandboxConfig, build_command, format_command

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class SandboxError(RuntimeError):
    """Base class for sandboxed execution errors."""

    def __init__(self, message: str, *, command: Sequence[str] = (), output: str = "") -> None:
        super().__init__(message)
        self.command = tuple(command)
        self.output = output


class ExecutableNotFoundError(SandboxError):
    """Raised when the requested executable cannot be located."""


class WorkingDirectoryError(SandboxError):
    """Raised when the requested working directory does not exist."""


class SandboxTimeoutError(SandboxError):
    """Raised when a process exceeds its deadline and is killed."""

    def __init__(self, command: Sequence[str], timeout: float, output: str = "") -> None:
        super().__init__(
            f"Command timed out after {timeout:g}s: {format_command(command)}",
            command=command,
            output=output,
        )
        self.timeout = timeout


class SandboxCommandError(SandboxError):
    """Raised when a process exits with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, output: str = "") -> None:
        super().__init__(
            f"Command exited with status {returncode}: {format_command(command)}",
            command=command,
            output=output,
        )
        self.returncode = returncode


@dataclass(slots=True)
class ExecutionResult:
    """Holds the outcome of a finished process; ``output`` merges stdout and stderr."""

    args: tuple[str, ...]
    returncode: int
    output: str
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def resolve_executable(name: str) -> str:
    """Return the absolute path of ``name`` or raise if it is not installed."""

    candidate = Path(name)
    if candidate.is_absolute():
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        raise ExecutableNotFoundError(f"Executable not found at {candidate}")
    binary = shutil.which(name)
    if binary is None:
        raise ExecutableNotFoundError(f"{name} executable not found on PATH")
    return binary


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        # The group leader runs as another user; kill the launcher we own.
        try:
            process.kill()
        except ProcessLookupError:
            return


async def run_process(
    argv: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> ExecutionResult:
    """Run ``argv`` to completion, killing its process group on deadline.

    Non-zero exit codes are reported in the result, not raised.
    """

    command = tuple(str(part) for part in argv)
    if cwd is not None and not os.path.isdir(cwd):
        raise WorkingDirectoryError(f"working directory does not exist: {cwd}", command=command)
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise ExecutableNotFoundError(
            f"Executable not found: {command[0]}", command=command
        ) from exc

    chunks: list[bytes] = []

    async def _pump() -> None:
        assert process.stdout is not None
        while True:
            chunk = await process.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            chunks.append(chunk)
        await process.wait()

    try:
        await asyncio.wait_for(_pump(), timeout)
    except asyncio.TimeoutError:
        _kill_process_tree(process)
        await process.wait()
        output = b"".join(chunks).decode("utf-8", errors="replace")
        raise SandboxTimeoutError(command, timeout or 0.0, output) from None
    except asyncio.CancelledError:
        _kill_process_tree(process)
        raise

    output = b"".join(chunks).decode("utf-8", errors="replace")
    return ExecutionResult(
        args=command,
        returncode=process.returncode if process.returncode is not None else -1,
        output=output,
        duration=time.monotonic() - started,
    )


class SandboxRunner:
    """Execute commands with a filtered environment and optional privilege drop."""

    def __init__(self, config: SandboxConfig, *, log: logging.Logger | None = None) -> None:
        self._config = config
        self._log = log or logger

    @property
    def config(self) -> SandboxConfig:
        return self._config

    async def run(
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        check: bool = True,
        environ: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        """Run ``name`` with ``args`` and return its combined output.

        ``timeout`` overrides the configured session timeout.
        Raises :class:`SandboxTimeoutError` on deadline and, when ``check`` is
        set, :class:`SandboxCommandError` on a non-zero exit.
        """

        command = build_command(self._config, name, args, environ=environ)
        deadline = self._config.session_timeout if timeout is None else timeout
        self._log.info(
            "Starting sandboxed process",
            extra={
                "executable": name,
                "managed": self._config.managed,
                "cwd": str(cwd) if cwd else None,
                "timeout": deadline,
            },
        )
        try:
            result = await run_process(command.argv, cwd=cwd, env=command.env, timeout=deadline)
        except SandboxTimeoutError:
            self._log.error(
                "Sandboxed process timed out",
                extra={"executable": name, "timeout": deadline},
            )
            raise

        self._log.info(
            "Sandboxed process finished",
            extra={
                "executable": name,
                "returncode": result.returncode,
                "output_length": len(result.output),
                "duration": round(result.duration, 3),
            },
        )
        if check and not result.ok:
            raise SandboxCommandError(result.args, result.returncode, result.output)
        return result


class FakeSandboxRunner(SandboxRunner):
    """Test double that returns canned results instead of spawning processes.

    ``handler`` receives ``(name, args, cwd)`` and wins over queued ``responses``.
    """

    def __init__(
        self,
        responses: Iterable[ExecutionResult] | None = None,
        *,
        handler: Callable[[str, tuple[str, ...], Path | None], ExecutionResult] | None = None,
        config: SandboxConfig | None = None,
    ) -> None:
        super().__init__(config or SandboxConfig())
        self._responses = list(responses or [])
        self._handler = handler
        self._invocations: list[tuple[str, ...]] = []

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    async def run(  # type: ignore[override]
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        check: bool = True,
        environ: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        argv = (name, *args)
        self._invocations.append(argv)
        if self._handler is not None:
            result = self._handler(name, tuple(args), Path(cwd) if cwd is not None else None)
        elif self._responses:
            result = self._responses.pop(0)
        else:
            result = ExecutionResult(args=argv, returncode=0, output="")
        if check and not result.ok:
            raise SandboxCommandError(argv, result.returncode, result.output)
        return result


__all__ = [
    "ExecutableNotFoundError",
    "ExecutionResult",
    "FakeSandboxRunner",
    "SandboxCommandError",
    "SandboxError",
    "SandboxRunner",
    "SandboxTimeoutError",
    "WorkingDirectoryError",
    "resolve_executable",
    "run_process",
]
