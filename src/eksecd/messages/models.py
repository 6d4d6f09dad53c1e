"""Typed records for the JSON lines emitted by assistant CLIs."""

from __future__ import annotations

import enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

EXIT_PLAN_MODE_TOOL = "ExitPlanMode"


class MessageKind(str, enum.Enum):
    ASSISTANT = "assistant"
    EXIT_PLAN_MODE = "exit_plan_mode"
    USER = "user"
    SYSTEM = "system"
    RESULT = "result"
    THREAD_STARTED = "thread_started"
    ITEM = "item"
    TURN = "turn"
    UNKNOWN = "unknown"


class _Record(BaseModel):
    """Treats JSON ``null`` as an absent field so defaults apply."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_null_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class ContentBlock(_Record):
    """One entry of an assistant or user ``content`` array."""

    model_config = ConfigDict(extra="allow")

    type: str = ""
    id: str = ""
    text: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class _BaseMessage(_Record):
    type: str
    session_id: str = ""


class AssistantBody(_Record):
    id: str = ""
    role: str = "assistant"
    model: str = ""
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None


class _AssistantBase(_BaseMessage):
    message: AssistantBody = Field(default_factory=AssistantBody)

    @property
    def message_id(self) -> str:
        return self.message.id

    def texts(self) -> list[str]:
        """Non-empty ``text`` blocks in order."""

        return [block.text for block in self.message.content if block.type == "text" and block.text]

    def tool_uses(self, name: str | None = None) -> list[ContentBlock]:
        return [
            block
            for block in self.message.content
            if block.type == "tool_use" and (name is None or block.name == name)
        ]


class AssistantMessage(_AssistantBase):
    kind: Literal[MessageKind.ASSISTANT] = MessageKind.ASSISTANT


class ExitPlanModeMessage(_AssistantBase):
    """An assistant turn that proposes a plan instead of acting."""

    kind: Literal[MessageKind.EXIT_PLAN_MODE] = MessageKind.EXIT_PLAN_MODE

    @property
    def plan(self) -> str:
        for block in self.tool_uses(EXIT_PLAN_MODE_TOOL):
            plan = block.input.get("plan")
            if isinstance(plan, str) and plan:
                return plan
        return ""


class UserBody(_Record):
    role: str = "user"
    content: Union[str, list[dict[str, Any]]] = ""


class UserMessage(_BaseMessage):
    kind: Literal[MessageKind.USER] = MessageKind.USER
    message: UserBody = Field(default_factory=UserBody)

    def is_real_user_input(self) -> bool:
        """True for typed prompts, False for tool results echoed back as user turns."""

        content = self.message.content
        if isinstance(content, str):
            return True
        return not any(block.get("type") == "tool_result" for block in content)


class SystemMessage(_BaseMessage):
    kind: Literal[MessageKind.SYSTEM] = MessageKind.SYSTEM
    subtype: str = ""
    cwd: str = ""
    model: str = ""


class ResultMessage(_BaseMessage):
    kind: Literal[MessageKind.RESULT] = MessageKind.RESULT
    subtype: str = ""
    is_error: bool = False
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    result: str = ""
    total_cost_usd: float = 0.0


class ThreadStartedMessage(_BaseMessage):
    """Codex session start; the thread id doubles as the session id."""

    kind: Literal[MessageKind.THREAD_STARTED] = MessageKind.THREAD_STARTED
    thread_id: str = ""

    @model_validator(mode="after")
    def _thread_is_session(self) -> "ThreadStartedMessage":
        if self.thread_id and not self.session_id:
            self.session_id = self.thread_id
        return self


class CodexItem(_Record):
    id: str = ""
    type: str = ""
    text: str = ""
    status: str = ""


class ItemMessage(_BaseMessage):
    kind: Literal[MessageKind.ITEM] = MessageKind.ITEM
    item: CodexItem = Field(default_factory=CodexItem)


class TurnUsage(_Record):
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0


class TurnMessage(_BaseMessage):
    kind: Literal[MessageKind.TURN] = MessageKind.TURN
    usage: TurnUsage | None = None


class UnknownMessage(_BaseMessage):
    kind: Literal[MessageKind.UNKNOWN] = MessageKind.UNKNOWN
    type: str = "unknown"


AgentMessage = Union[
    AssistantMessage,
    ExitPlanModeMessage,
    UserMessage,
    SystemMessage,
    ResultMessage,
    ThreadStartedMessage,
    ItemMessage,
    TurnMessage,
    UnknownMessage,
]


__all__ = [
    "AgentMessage",
    "AssistantBody",
    "AssistantMessage",
    "CodexItem",
    "ContentBlock",
    "EXIT_PLAN_MODE_TOOL",
    "ExitPlanModeMessage",
    "ItemMessage",
    "MessageKind",
    "ResultMessage",
    "SystemMessage",
    "ThreadStartedMessage",
    "TurnMessage",
    "TurnUsage",
    "UnknownMessage",
    "UserBody",
    "UserMessage",
]
