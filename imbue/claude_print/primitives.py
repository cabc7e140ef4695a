from enum import StrEnum
from typing import Final

# Environment variable the agent CLI reads to identify which client launched it.
ENTRYPOINT_ENV_VAR: Final[str] = "CLAUDE_CODE_ENTRYPOINT"
ENTRYPOINT_VALUE: Final[str] = "sdk-py"

DEFAULT_EXECUTABLE_NAME: Final[str] = "claude"

# Capacity of the queue between the decode loop and the consumer of a stream.
DEFAULT_STREAM_CAPACITY: Final[int] = 10


class MessageType(StrEnum):
    """Top-level discriminator of a protocol record (the `type` field)."""

    ASSISTANT = "assistant"
    USER = "user"
    SYSTEM = "system"
    RESULT = "result"


class ContentBlockType(StrEnum):
    """Discriminator of a content block inside `message.content`."""

    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


class OutputFormat(StrEnum):
    """Value passed to the agent's --output-format flag."""

    TEXT = "text"
    JSON = "json"
    STREAM_JSON = "stream-json"


class PermissionMode(StrEnum):
    """Value passed to the agent's --permission-mode flag."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"
