"""Sandboxed subprocess construction and execution."""

from .runner import (
    ExecutableNotFoundError,
    ExecutionResult,
    FakeSandboxRunner,
    SandboxCommandError,
    SandboxError,
    SandboxRunner,
    SandboxTimeoutError,
    WorkingDirectoryError,
    resolve_executable,
    run_process,
)
from .utils import (
    BLOCKED_ENV_VARS,
    DEFAULT_SESSION_TIMEOUT,
    SandboxCommand,
    SandboxConfig,
    build_command,
    redact_secrets,
)

__all__ = [
    "BLOCKED_ENV_VARS",
    "DEFAULT_SESSION_TIMEOUT",
    "ExecutableNotFoundError",
    "ExecutionResult",
    "FakeSandboxRunner",
    "SandboxCommand",
    "SandboxCommandError",
    "SandboxConfig",
    "SandboxError",
    "SandboxRunner",
    "SandboxTimeoutError",
    "WorkingDirectoryError",
    "build_command",
    "redact_secrets",
    "resolve_executable",
    "run_process",
]
