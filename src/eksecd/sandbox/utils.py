"""Environment and command construction helpers for sandboxed processes."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

DEFAULT_SESSION_TIMEOUT = 60 * 60.0

# Credentials and internal endpoints held by the agent itself.
BLOCKED_ENV_VARS = frozenset(
    {
        "EKSECD_API_KEY",
        "EKSECD_WS_API_URL",
        "CCAGENT_API_KEY",
        "CCAGENT_WS_API_URL",
        "AGENT_EXEC_USER",
        "AGENT_HTTP_PROXY",
    }
)

_PROXY_PAIRS = (("HTTP_PROXY", "http_proxy"), ("HTTPS_PROXY", "https_proxy"))
_TOKEN_PATTERN = re.compile(r"(x-access-token:)[^@\s]+(@)")


@dataclass(slots=True, frozen=True)
class SandboxConfig:
    """Process-wide settings applied to every sandboxed invocation."""

    exec_user: str = ""
    http_proxy: str = ""
    blocked_env_vars: frozenset[str] = BLOCKED_ENV_VARS
    session_timeout: float = DEFAULT_SESSION_TIMEOUT

    @property
    def managed(self) -> bool:
        return bool(self.exec_user)


@dataclass(slots=True)
class SandboxCommand:
    """A fully constructed invocation: argv for the launcher and its environment."""

    argv: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)


def redact_secrets(text: str) -> str:
    """Mask access tokens embedded in remote URLs."""

    return _TOKEN_PATTERN.sub(r"\1***\2", text)


def format_command(argv: Sequence[str]) -> str:
    return redact_secrets(" ".join(argv))


def filter_environment(
    environ: Mapping[str, str] | None = None, blocked: Iterable[str] = BLOCKED_ENV_VARS
) -> dict[str, str]:
    """Return a copy of ``environ`` without any blocked variable."""

    source = os.environ if environ is None else environ
    denied = set(blocked)
    return {key: value for key, value in source.items() if key not in denied}


def inject_proxy_env(env: dict[str, str], proxy_url: str) -> dict[str, str]:
    """Add proxy variables for names the caller has not set already."""

    if not proxy_url:
        return env
    for upper, lower in _PROXY_PAIRS:
        if upper in env or lower in env:
            continue
        env[upper] = proxy_url
        env[lower] = proxy_url
    return env


def home_for_user(user: str) -> str:
    """Home directory of ``user`` from the password database, else ``/home/<user>``."""

    import pwd

    try:
        return pwd.getpwnam(user).pw_dir
    except KeyError:
        return f"/home/{user}"


def update_home_for_user(env: dict[str, str], user: str) -> dict[str, str]:
    env["HOME"] = home_for_user(user)
    return env


def quote_argument(value: str) -> str:
    """Single-quote ``value`` for a POSIX shell."""

    return "'" + value.replace("'", "'\\''") + "'"


def build_shell_command(name: str, args: Sequence[str]) -> str:
    return " ".join(quote_argument(part) for part in (name, *args))


def build_command(
    config: SandboxConfig,
    name: str,
    args: Sequence[str] = (),
    *,
    environ: Mapping[str, str] | None = None,
) -> SandboxCommand:
    """Construct the invocation for ``name`` under ``config``.

    Without an execution user the command runs directly with the filtered
    environment. With one, the command is wrapped as::

        sudo -u <user> bash -c "umask 002 && exec env -i K=V... <command>"

    so the child sees only the explicitly passed variables and creates
    group-writable files.
    """

    env = filter_environment(environ, config.blocked_env_vars)
    inject_proxy_env(env, config.http_proxy)

    if not config.managed:
        return SandboxCommand(argv=(name, *args), env=env)

    update_home_for_user(env, config.exec_user)
    assignments = " ".join(quote_argument(f"{key}={value}") for key, value in sorted(env.items()))
    script = f"umask 002 && exec env -i {assignments} {build_shell_command(name, args)}"
    return SandboxCommand(argv=("sudo", "-u", config.exec_user, "bash", "-c", script), env=env)


__all__ = [
    "BLOCKED_ENV_VARS",
    "DEFAULT_SESSION_TIMEOUT",
    "SandboxCommand",
    "SandboxConfig",
    "build_command",
    "build_shell_command",
    "filter_environment",
    "format_command",
    "home_for_user",
    "inject_proxy_env",
    "quote_argument",
    "redact_secrets",
    "update_home_for_user",
]
