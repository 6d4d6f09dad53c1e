"""Configuration management for eksecd."""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .sandbox.utils import BLOCKED_ENV_VARS, DEFAULT_SESSION_TIMEOUT, SandboxConfig, home_for_user

WORKTREE_DIR_NAME = ".eksec_worktrees"


def _split_list(value: str) -> list[str]:
    parts: list[str] = []
    for chunk in value.split(os.pathsep):
        parts.extend(piece.strip() for piece in chunk.split(","))
    return [part for part in parts if part]


class AgentSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_exec_user: str = Field(default="", validation_alias="AGENT_EXEC_USER")
    agent_http_proxy: str = Field(default="", validation_alias="AGENT_HTTP_PROXY")
    extra_blocked_env_vars: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="EKSECD_BLOCKED_ENV_VARS"
    )
    session_timeout_seconds: float = Field(
        default=DEFAULT_SESSION_TIMEOUT, validation_alias="EKSECD_SESSION_TIMEOUT"
    )
    repo_path: Path = Field(default=Path("."), validation_alias="EKSECD_REPO_PATH")
    state_path: Path = Field(
        default=Path("~/.config/eksecd/state.json"), validation_alias="EKSECD_STATE_PATH"
    )
    worktree_base_path: Path | None = Field(default=None, validation_alias="EKSECD_WORKTREE_BASE")
    worktree_pool_size: int = Field(default=0, validation_alias="WORKTREE_POOL_SIZE")
    max_concurrency: int = Field(default=1, validation_alias="MAX_CONCURRENCY")
    lock_dir: Path | None = Field(default=None, validation_alias="EKSECD_LOCK_DIR")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="EKSECD_PROFILE_PATHS"
    )
    default_profile: str = Field(default="claude", validation_alias="EKSECD_PROFILE")
    agent_id: str | None = Field(default=None, validation_alias="EKSECD_AGENT_ID")
    log_level: str = Field(default="INFO", validation_alias="EKSECD_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "EKSECD_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_exec_user", "agent_http_proxy")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("extra_blocked_env_vars", mode="before")
    @classmethod
    def _parse_blocked(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        if isinstance(value, str):
            return tuple(_split_list(value))
        raise TypeError("EKSECD_BLOCKED_ENV_VARS must be a list or a separated string")

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("EKSECD_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("session_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value < 1:
            raise ValueError("EKSECD_SESSION_TIMEOUT must be >= 1 second")
        return value

    @field_validator("max_concurrency")
    @classmethod
    def _validate_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_CONCURRENCY must be >= 1")
        return value

    @field_validator("worktree_pool_size")
    @classmethod
    def _validate_pool_size(cls, value: int) -> int:
        if value < 0:
            raise ValueError("WORKTREE_POOL_SIZE must be >= 0")
        return value

    @property
    def managed(self) -> bool:
        """True when sandboxed processes drop privileges to a separate user."""

        return bool(self.agent_exec_user)

    @property
    def blocked_env_vars(self) -> frozenset[str]:
        return BLOCKED_ENV_VARS | frozenset(self.extra_blocked_env_vars)

    def resolved_worktree_base(self) -> Path:
        """Directory under which job and pool worktrees are created."""

        if self.worktree_base_path is not None:
            return self.worktree_base_path.expanduser()
        if self.agent_exec_user:
            return Path(home_for_user(self.agent_exec_user)) / WORKTREE_DIR_NAME
        return Path.home() / WORKTREE_DIR_NAME

    def resolved_lock_dir(self) -> Path:
        if self.lock_dir is not None:
            return self.lock_dir.expanduser()
        return Path(tempfile.gettempdir()) / "eksecd"

    def sandbox_config(self) -> SandboxConfig:
        return SandboxConfig(
            exec_user=self.agent_exec_user,
            http_proxy=self.agent_http_proxy,
            blocked_env_vars=self.blocked_env_vars,
            session_timeout=self.session_timeout_seconds,
        )


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    """Return cached settings instance."""

    settings = AgentSettings()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["AgentSettings", "WORKTREE_DIR_NAME", "get_settings"]
