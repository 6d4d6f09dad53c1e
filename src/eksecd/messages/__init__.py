"""Typed parsing of assistant CLI output."""

from .models import (
    AgentMessage,
    AssistantMessage,
    ExitPlanModeMessage,
    ItemMessage,
    MessageKind,
    ResultMessage,
    SystemMessage,
    ThreadStartedMessage,
    TurnMessage,
    UnknownMessage,
    UserMessage,
)
from .parser import (
    NoReplyError,
    OutputReadError,
    extract_reply,
    extract_session_id,
    find_result,
    last_assistant_text,
    parse_line,
    parse_output,
    parse_stream,
    strip_base64_images,
    strip_large_payloads,
    truncate_tool_result_content,
    truncate_tool_use_output,
)

__all__ = [
    "AgentMessage",
    "AssistantMessage",
    "ExitPlanModeMessage",
    "ItemMessage",
    "MessageKind",
    "NoReplyError",
    "OutputReadError",
    "ResultMessage",
    "SystemMessage",
    "ThreadStartedMessage",
    "TurnMessage",
    "UnknownMessage",
    "UserMessage",
    "extract_reply",
    "extract_session_id",
    "find_result",
    "last_assistant_text",
    "parse_line",
    "parse_output",
    "parse_stream",
    "strip_base64_images",
    "strip_large_payloads",
    "truncate_tool_result_content",
    "truncate_tool_use_output",
]
