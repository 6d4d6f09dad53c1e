"""Turn assistant CLI stream-json output into typed messages.

Each non-blank line becomes exactly one message. Oversized payloads are cut
down before decoding so a single multi-megabyte tool result or inline image
does not dominate memory, and a line that is not valid JSON is kept as an
:class:`~eksecd.messages.models.UnknownMessage` instead of aborting the parse.
"""

from __future__ import annotations

import io
import json
import logging
import re
from typing import Iterable, Iterator, Sequence, TextIO

from pydantic import ValidationError

from .models import (
    EXIT_PLAN_MODE_TOOL,
    AgentMessage,
    AssistantMessage,
    ExitPlanModeMessage,
    ItemMessage,
    ResultMessage,
    SystemMessage,
    ThreadStartedMessage,
    TurnMessage,
    UnknownMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 100 * 1024
MIN_IMAGE_LENGTH = 1000
IMAGE_PLACEHOLDER = "[IMAGE_STRIPPED]"
REPLY_SIZE_RATIO = 5

# A JSON string body: anything but quote/backslash, or an escape pair.
_JSON_STRING_BODY = r'[^"\\]*(?:\\.[^"\\]*)*'

_BASE64_IMAGE = re.compile(r'("data":")([A-Za-z0-9+/=]{%d,})(")' % MIN_IMAGE_LENGTH)
_TOOL_RESULT_CONTENT = re.compile(r'("type":"tool_result","content":")(%s)(")' % _JSON_STRING_BODY, re.S)
_STDOUT = re.compile(r'("stdout":")(%s)(")' % _JSON_STRING_BODY, re.S)
_STDERR = re.compile(r'("stderr":")(%s)(")' % _JSON_STRING_BODY, re.S)
_ESCAPE = re.compile(r"\\(?:u[0-9a-fA-F]{4}|.)", re.S)

_ASSISTANT_TYPES = {"assistant"}
_MODELS: dict[str, type] = {
    "user": UserMessage,
    "system": SystemMessage,
    "result": ResultMessage,
    "thread.started": ThreadStartedMessage,
    "item.started": ItemMessage,
    "item.updated": ItemMessage,
    "item.completed": ItemMessage,
    "turn.started": TurnMessage,
    "turn.completed": TurnMessage,
    "turn.failed": TurnMessage,
}


class OutputReadError(RuntimeError):
    """Raised when the assistant output stream itself cannot be read."""


class NoReplyError(RuntimeError):
    """Raised when the output holds no plan, result or assistant text."""


# Pre-processing


def _safe_cut(content: str, limit: int) -> int:
    """Largest cut point ``<= limit`` that does not split an escape sequence."""

    for match in _ESCAPE.finditer(content, 0, min(len(content), limit + 6)):
        if match.start() >= limit:
            break
        if match.end() > limit:
            return match.start()
    return limit


def _truncator(marker: str):
    def replace(match: re.Match[str]) -> str:
        content = match.group(2)
        if len(content) <= MAX_FIELD_LENGTH:
            return match.group(0)
        cut = _safe_cut(content, MAX_FIELD_LENGTH)
        return (
            f"{match.group(1)}{content[:cut]}...[{marker}_TRUNCATED_{len(content)}_BYTES]{match.group(3)}"
        )

    return replace


_truncate_content = _truncator("CONTENT")
_truncate_stdout = _truncator("STDOUT")
_truncate_stderr = _truncator("STDERR")


def strip_base64_images(line: str) -> str:
    """Replace inline base64 image payloads with a placeholder."""

    if '"data":"' not in line:
        return line
    return _BASE64_IMAGE.sub(lambda m: f"{m.group(1)}{IMAGE_PLACEHOLDER}{m.group(3)}", line)


def truncate_tool_result_content(line: str) -> str:
    if '"tool_result"' not in line:
        return line
    return _TOOL_RESULT_CONTENT.sub(_truncate_content, line)


def truncate_tool_use_output(line: str) -> str:
    """Cap ``stdout``/``stderr`` strings of tool-use results."""

    if '"stdout":"' in line:
        line = _STDOUT.sub(_truncate_stdout, line)
    if '"stderr":"' in line:
        line = _STDERR.sub(_truncate_stderr, line)
    return line


def strip_large_payloads(line: str) -> str:
    line = strip_base64_images(line)
    line = truncate_tool_result_content(line)
    return truncate_tool_use_output(line)


# Parsing


def _unknown(payload: dict | None = None) -> UnknownMessage:
    if payload is None:
        return UnknownMessage(type="unknown")
    msg_type = payload.get("type")
    session_id = payload.get("session_id") or payload.get("thread_id")
    return UnknownMessage(
        type=msg_type if isinstance(msg_type, str) and msg_type else "unknown",
        session_id=session_id if isinstance(session_id, str) else "",
    )


def _is_exit_plan_mode(payload: dict) -> bool:
    message = payload.get("message")
    if not isinstance(message, dict):
        return False
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(
        isinstance(block, dict)
        and block.get("type") == "tool_use"
        and block.get("name") == EXIT_PLAN_MODE_TOOL
        for block in content
    )


def parse_line(line: str) -> AgentMessage:
    """Decode one JSON line. Never raises; undecodable input is ``UnknownMessage``."""

    try:
        payload = json.loads(line)
    except ValueError:
        return _unknown()
    if not isinstance(payload, dict):
        return _unknown()

    msg_type = payload.get("type")
    if msg_type in _ASSISTANT_TYPES:
        model: type | None = ExitPlanModeMessage if _is_exit_plan_mode(payload) else AssistantMessage
    else:
        model = _MODELS.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        return _unknown(payload)

    payload.pop("kind", None)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Falling back to unknown message", extra={"type": msg_type, "error": str(exc)})
        return _unknown(payload)


def iter_messages(lines: Iterable[str]) -> Iterator[AgentMessage]:
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        yield parse_line(strip_large_payloads(line))


def parse_stream(stream: TextIO) -> list[AgentMessage]:
    """Parse a text stream line by line; lines may be arbitrarily long."""

    messages: list[AgentMessage] = []
    try:
        for message in iter_messages(stream):
            messages.append(message)
    except (OSError, UnicodeDecodeError) as exc:
        raise OutputReadError(f"failed to read assistant output: {exc}") from exc
    return messages


def parse_output(text: str) -> list[AgentMessage]:
    return parse_stream(io.StringIO(text))


# Queries


def extract_session_id(messages: Sequence[AgentMessage]) -> str:
    """Session id from the first lifecycle-start message, else the first message carrying one."""

    for message in messages:
        if isinstance(message, ThreadStartedMessage) and message.session_id:
            return message.session_id
        if isinstance(message, SystemMessage) and message.session_id:
            return message.session_id
    for message in messages:
        if message.session_id:
            return message.session_id
    return ""


def find_result(messages: Sequence[AgentMessage]) -> ResultMessage | None:
    """The last result message, if the run produced one."""

    for message in reversed(messages):
        if isinstance(message, ResultMessage):
            return message
    return None


def last_assistant_text(messages: Sequence[AgentMessage]) -> str:
    for message in reversed(messages):
        if isinstance(message, (AssistantMessage, ExitPlanModeMessage)):
            texts = message.texts()
            if texts:
                return texts[-1]
        elif isinstance(message, ItemMessage) and message.item.type == "agent_message" and message.item.text:
            return message.item.text
    return ""


def _prefer_result(result_text: str, reply: str) -> str:
    if result_text and len(result_text) >= len(reply):
        return result_text
    return reply


def _assistant_reply(messages: Sequence[AgentMessage], result_text: str) -> str:
    last_user = -1
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if isinstance(message, UserMessage) and message.is_real_user_input():
            last_user = index
            break

    collected: list[tuple[str, str]] = []
    for message in messages[last_user + 1:]:
        if isinstance(message, AssistantMessage):
            collected.extend((message.message_id, text) for text in message.texts())
    if not collected:
        return ""

    last_two: list[str] = []
    seen: set[str] = set()
    for message_id, text in reversed(collected):
        if len(last_two) == 2:
            break
        if message_id in seen:
            continue
        seen.add(message_id)
        last_two.insert(0, text)

    if len(last_two) == 2 and len(last_two[0]) > len(last_two[1]) * REPLY_SIZE_RATIO:
        return _prefer_result(result_text, "\n\n".join(last_two))
    return _prefer_result(result_text, last_two[-1])


def extract_reply(messages: Sequence[AgentMessage]) -> str:
    """Pick the text to send back to the requester.

    A proposed plan wins. Otherwise the final assistant text after the last
    real user turn is used, together with the one before it when that one is
    more than five times longer (a detailed answer followed by a short
    summary). The result message replaces either when it is at least as
    long. Codex output falls back to its last ``agent_message`` item.

    Raises :class:`NoReplyError` when nothing usable is present.
    """

    for message in reversed(messages):
        if isinstance(message, ExitPlanModeMessage) and message.plan:
            return message.plan

    result = find_result(messages)
    result_text = result.result if result is not None else ""

    reply = _assistant_reply(messages, result_text)
    if reply:
        return reply
    if result_text:
        return result_text

    for message in reversed(messages):
        if isinstance(message, ItemMessage) and message.item.type == "agent_message" and message.item.text:
            return message.item.text
    raise NoReplyError("no plan, result or assistant message with text content found")


__all__ = [
    "IMAGE_PLACEHOLDER",
    "MAX_FIELD_LENGTH",
    "NoReplyError",
    "OutputReadError",
    "extract_reply",
    "extract_session_id",
    "find_result",
    "iter_messages",
    "last_assistant_text",
    "parse_line",
    "parse_output",
    "parse_stream",
    "strip_base64_images",
    "strip_large_payloads",
    "truncate_tool_result_content",
    "truncate_tool_use_output",
]
