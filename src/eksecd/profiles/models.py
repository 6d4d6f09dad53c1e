"""Profile models describing how to invoke an assistant CLI."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_PERMISSION_MODE = "acceptEdits"
BYPASS_PERMISSION_MODE = "bypassPermissions"
READ_ONLY_PERMISSION_MODE = "plan"
DEFAULT_CODEX_SANDBOX = "workspace-write"
READ_ONLY_CODEX_SANDBOX = "read-only"


class AgentProfile(BaseModel):
    """Configuration describing which assistant CLI to run and with which flags."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(default="", description="Display title for the profile.")
    agent: Literal["claude", "codex"] = Field(
        default="claude",
        description="Assistant CLI flavour; selects the argument layout.",
    )
    command: str = Field(
        default="",
        description="Executable to run. Defaults to the agent name.",
    )
    model: str = Field(default="", description="Model override passed to the CLI.")
    permission_mode: str = Field(
        default=DEFAULT_PERMISSION_MODE,
        description="Claude permission mode; 'bypassPermissions' also disables the Codex sandbox.",
    )
    system_prompt: str = Field(
        default="",
        description="Extra instructions appended to the assistant's system prompt.",
    )
    disallowed_tools: list[str] = Field(
        default_factory=list,
        description="Tools the assistant must not use (Claude only).",
    )
    sandbox: str = Field(
        default="",
        description="Codex sandbox mode. Defaults to workspace-write.",
    )
    extra_flags: list[str] = Field(
        default_factory=list,
        description="Additional flags inserted before the prompt.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("disallowed_tools", "extra_flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("disallowed_tools and extra_flags must be sequences of strings")

    @property
    def executable(self) -> str:
        return self.command or self.agent

    def build_args(
        self,
        prompt: str,
        session_id: str | None = None,
        *,
        read_only: bool = False,
        system_prompt: str = "",
    ) -> tuple[str, ...]:
        """Return the CLI arguments (without the executable) for one turn."""

        instructions = "\n\n".join(part for part in (self.system_prompt, system_prompt) if part)
        if self.agent == "codex":
            return self._codex_args(prompt, session_id, read_only, instructions)
        return self._claude_args(prompt, session_id, read_only, instructions)

    def _claude_args(
        self, prompt: str, session_id: str | None, read_only: bool, instructions: str
    ) -> tuple[str, ...]:
        mode = READ_ONLY_PERMISSION_MODE if read_only else self.permission_mode
        args = ["--permission-mode", mode, "--verbose", "--output-format", "stream-json"]
        if session_id:
            args += ["--resume", session_id]
        args += ["-p", prompt]
        if self.model:
            args += ["--model", self.model]
        if instructions:
            args += ["--append-system-prompt", instructions]
        if self.disallowed_tools:
            args += ["--disallowedTools", " ".join(self.disallowed_tools)]
        args += self.extra_flags
        return tuple(args)

    def _codex_args(
        self, prompt: str, session_id: str | None, read_only: bool, instructions: str
    ) -> tuple[str, ...]:
        args: list[str] = []
        if self.model:
            args += ["-m", self.model]
        args += ["--search", "exec"]
        if read_only:
            args += ["--sandbox", READ_ONLY_CODEX_SANDBOX]
        elif self.permission_mode == BYPASS_PERMISSION_MODE:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args += ["--sandbox", self.sandbox or DEFAULT_CODEX_SANDBOX]
        args += ["--json", "--skip-git-repo-check", *self.extra_flags]
        # Codex has no system prompt flag.
        if instructions:
            prompt = f"# BEHAVIOR INSTRUCTIONS\n{instructions}\n\n# USER MESSAGE\n{prompt}"
        if session_id:
            args += ["resume", session_id]
        args.append(prompt)
        return tuple(args)


BUILTIN_PROFILES: dict[str, AgentProfile] = {
    "claude": AgentProfile(id="claude", title="Claude Code", agent="claude"),
    "codex": AgentProfile(id="codex", title="Codex", agent="codex"),
}


__all__ = [
    "AgentProfile",
    "BUILTIN_PROFILES",
    "BYPASS_PERMISSION_MODE",
    "DEFAULT_PERMISSION_MODE",
]
