"""Decoding of the agent's newline-delimited JSON protocol into typed messages.

Every function here is pure apart from reading the wall clock when a record
carries no usable timestamp. Only structural problems are errors: invalid
JSON, a missing or non-string `type`, and content blocks of an unknown shape.
Any other field that is missing or of the wrong JSON type is treated as absent.
"""

import json
import math
from collections.abc import Mapping
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Final

from imbue.claude_print.data_types import AssistantMessage
from imbue.claude_print.data_types import ContentBlock
from imbue.claude_print.data_types import McpServerStatus
from imbue.claude_print.data_types import Message
from imbue.claude_print.data_types import ResultMessage
from imbue.claude_print.data_types import SystemMessage
from imbue.claude_print.data_types import TextBlock
from imbue.claude_print.data_types import ToolResultBlock
from imbue.claude_print.data_types import ToolUseBlock
from imbue.claude_print.data_types import Usage
from imbue.claude_print.data_types import UserMessage
from imbue.claude_print.errors import CLIJSONDecodeError
from imbue.claude_print.primitives import ContentBlockType
from imbue.claude_print.primitives import MessageType

TEXT_OUTPUT_SUBTYPE: Final[str] = "text_output"
TEXT_OUTPUT_SESSION_ID: Final[str] = "text_output_session"


# -- Typed accessors --


def get_optional_str(record: Mapping[str, Any], key: str) -> str | None:
    """Return the value at key if it is a non-empty string, else None."""
    value = record.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def get_str(record: Mapping[str, Any], key: str) -> str:
    value = record.get(key)
    return value if isinstance(value, str) else ""


def _get_finite_number(record: Mapping[str, Any], key: str) -> int | float | None:
    value = record.get(key)
    # bool is an int subclass but true/false are not numbers on the wire
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def get_int(record: Mapping[str, Any], key: str) -> int:
    """Return the value at key as an int, or 0 if it is not a JSON number.

    JSON numbers may arrive as floats (e.g. 1200.0); they are truncated.
    Numbers too large for a double (parsed as infinity) count as absent.
    """
    value = _get_finite_number(record, key)
    return 0 if value is None else int(value)


def get_optional_float(record: Mapping[str, Any], key: str) -> float | None:
    value = _get_finite_number(record, key)
    if value is None:
        return None
    try:
        return float(value)
    except OverflowError:
        # integers beyond double range
        return None


def get_bool(record: Mapping[str, Any], key: str) -> bool:
    value = record.get(key)
    return value if isinstance(value, bool) else False


def get_optional_mapping(record: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    value = record.get(key)
    return value if isinstance(value, dict) else None


def get_list(record: Mapping[str, Any], key: str) -> list[Any]:
    value = record.get(key)
    return value if isinstance(value, list) else []


def parse_timestamp(record: Mapping[str, Any]) -> datetime:
    """Parse the RFC 3339 `timestamp` field, falling back to the current time."""
    raw_timestamp = record.get("timestamp")
    if isinstance(raw_timestamp, str):
        # fromisoformat only accepts a trailing Z from Python 3.11 on, normalize it anyway
        normalized = raw_timestamp[:-1] + "+00:00" if raw_timestamp.endswith(("Z", "z")) else raw_timestamp
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            parsed = None
        # RFC 3339 requires an offset, so naive values are rejected like malformed ones
        if parsed is not None and parsed.tzinfo is not None:
            return parsed
    return datetime.now(timezone.utc)


# -- Content blocks --


def decode_content_block(raw_block: Any, raw_line: str) -> ContentBlock:
    """Decode one element of `message.content`."""
    if isinstance(raw_block, str):
        return TextBlock(text=raw_block)
    if not isinstance(raw_block, dict):
        raise CLIJSONDecodeError(raw_line, "invalid content block format")

    block_type = raw_block.get("type")
    if not isinstance(block_type, str):
        text = raw_block.get("text")
        if isinstance(text, str):
            return TextBlock(text=text)
        raise CLIJSONDecodeError(raw_line, "missing content block type")

    match block_type:
        case ContentBlockType.TEXT:
            text = raw_block.get("text")
            if not isinstance(text, str):
                raise CLIJSONDecodeError(raw_line, "missing text in text block")
            return TextBlock(text=text)
        case ContentBlockType.TOOL_USE:
            return ToolUseBlock(
                id=get_str(raw_block, "id"),
                name=get_str(raw_block, "name"),
                input=dict(get_optional_mapping(raw_block, "input") or {}),
            )
        case ContentBlockType.TOOL_RESULT:
            return ToolResultBlock(
                tool_use_id=get_str(raw_block, "tool_use_id"),
                content=raw_block.get("content"),
                is_error=get_bool(raw_block, "is_error"),
            )
        case _:
            raise CLIJSONDecodeError(raw_line, f"unknown content block type: {block_type}")


def decode_content_blocks(raw_content: Any, raw_line: str) -> tuple[ContentBlock, ...]:
    """Decode `message.content`, which may be a string, a single block or a list of blocks.

    A single bad element fails the whole message; nothing is skipped.
    """
    if isinstance(raw_content, str):
        return (TextBlock(text=raw_content),)
    if isinstance(raw_content, list):
        return tuple(decode_content_block(raw_block, raw_line) for raw_block in raw_content)
    if isinstance(raw_content, dict):
        return (decode_content_block(raw_content, raw_line),)
    raise CLIJSONDecodeError(raw_line, "invalid content format")


def _decode_message_content(record: Mapping[str, Any], raw_line: str) -> tuple[ContentBlock, ...]:
    inner_message = get_optional_mapping(record, "message")
    if inner_message is None or "content" not in inner_message:
        return ()
    return decode_content_blocks(inner_message["content"], raw_line)


# -- Per-variant extraction --


def _decode_mcp_servers(record: Mapping[str, Any]) -> tuple[McpServerStatus, ...]:
    return tuple(
        McpServerStatus(name=get_str(raw_server, "name"), status=get_str(raw_server, "status"))
        for raw_server in get_list(record, "mcp_servers")
        if isinstance(raw_server, dict)
    )


def _decode_system(record: Mapping[str, Any], session_id: str, created_at: datetime) -> SystemMessage:
    return SystemMessage(
        session_id=session_id,
        created_at=created_at,
        subtype=get_str(record, "subtype"),
        api_key_source=get_optional_str(record, "apiKeySource"),
        cwd=get_optional_str(record, "cwd"),
        model=get_optional_str(record, "model"),
        permission_mode=get_optional_str(record, "permissionMode"),
        tools=frozenset(tool for tool in get_list(record, "tools") if isinstance(tool, str)),
        mcp_servers=_decode_mcp_servers(record),
    )


def _decode_usage(record: Mapping[str, Any]) -> Usage | None:
    raw_usage = get_optional_mapping(record, "usage")
    if raw_usage is None:
        return None
    return Usage(
        input_tokens=get_int(raw_usage, "input_tokens"),
        output_tokens=get_int(raw_usage, "output_tokens"),
    )


def _decode_result_text(record: Mapping[str, Any]) -> str | None:
    """Strings are taken verbatim, other JSON values are re-serialized, null means absent."""
    raw_result = record.get("result")
    if raw_result is None:
        return None
    if isinstance(raw_result, str):
        return raw_result
    return json.dumps(raw_result, ensure_ascii=False, separators=(",", ":"))


def _decode_result(record: Mapping[str, Any], session_id: str, created_at: datetime) -> ResultMessage:
    total_cost_usd = get_optional_float(record, "total_cost_usd")
    return ResultMessage(
        session_id=session_id,
        created_at=created_at,
        subtype=get_str(record, "subtype"),
        duration_ms=get_int(record, "duration_ms"),
        duration_api_ms=get_int(record, "duration_api_ms"),
        is_error=get_bool(record, "is_error"),
        num_turns=get_int(record, "num_turns"),
        total_cost_usd=total_cost_usd if total_cost_usd is not None and total_cost_usd > 0 else None,
        usage=_decode_usage(record),
        result=_decode_result_text(record),
    )


# -- Entry points --


def decode_record(record: Mapping[str, Any], raw_line: str | None = None) -> Message:
    """Classify an already-parsed JSON object into a Message.

    raw_line is attached to any error raised; it defaults to the re-serialized record.
    """
    if raw_line is None:
        raw_line = json.dumps(record, ensure_ascii=False)

    message_type = record.get("type")
    if not isinstance(message_type, str):
        raise CLIJSONDecodeError(raw_line, "missing or invalid message type")

    session_id = get_str(record, "session_id")
    parent_tool_use_id = get_optional_str(record, "parent_tool_use_id")
    created_at = parse_timestamp(record)

    match message_type:
        case MessageType.SYSTEM:
            return _decode_system(record, session_id, created_at)
        case MessageType.ASSISTANT:
            return AssistantMessage(
                session_id=session_id,
                created_at=created_at,
                content_blocks=_decode_message_content(record, raw_line),
                parent_tool_use_id=parent_tool_use_id,
            )
        case MessageType.USER:
            return UserMessage(
                session_id=session_id,
                created_at=created_at,
                content_blocks=_decode_message_content(record, raw_line),
                parent_tool_use_id=parent_tool_use_id,
            )
        case MessageType.RESULT:
            return _decode_result(record, session_id, created_at)
        case _:
            return SystemMessage(subtype=message_type, session_id=session_id, created_at=created_at)


def _reject_non_json_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a valid JSON value")


def decode_line(line: str | bytes) -> Message:
    """Decode one line of protocol output into a Message.

    Raises CLIJSONDecodeError, carrying the line verbatim, if the line is not a
    JSON object or does not describe a well-formed record.
    """
    raw_line = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    raw_line = raw_line.rstrip("\r\n")
    try:
        record = json.loads(raw_line, parse_constant=_reject_non_json_constant)
    except ValueError as e:
        raise CLIJSONDecodeError(raw_line, str(e)) from e
    if not isinstance(record, dict):
        raise CLIJSONDecodeError(raw_line, "top-level value is not a JSON object")
    return decode_record(record, raw_line)


def decode_text_output(output: str, created_at: datetime | None = None) -> ResultMessage:
    """Wrap plain-text agent output (--output-format text) in a single result message."""
    return ResultMessage(
        subtype=TEXT_OUTPUT_SUBTYPE,
        session_id=TEXT_OUTPUT_SESSION_ID,
        result=output,
        created_at=created_at if created_at is not None else datetime.now(timezone.utc),
    )
