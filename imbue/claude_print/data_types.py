from datetime import datetime
from typing import Annotated
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import JsonValue

from imbue.claude_print.primitives import ContentBlockType
from imbue.claude_print.primitives import MessageType


class FrozenModel(BaseModel):
    """Base class for the immutable value objects produced by the decoder."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


# -- Content blocks --


class TextBlock(FrozenModel):
    """Plain text emitted by the assistant or supplied by the user."""

    type: Literal[ContentBlockType.TEXT] = ContentBlockType.TEXT
    text: str = Field(description="The text content")


class ToolUseBlock(FrozenModel):
    """A request from the assistant to invoke a tool."""

    type: Literal[ContentBlockType.TOOL_USE] = ContentBlockType.TOOL_USE
    id: str = Field(default="", description="Identifier that the matching tool result refers back to")
    name: str = Field(default="", description="Name of the tool being invoked")
    input: dict[str, JsonValue] = Field(default_factory=dict, description="Arguments for the tool call")


class ToolResultBlock(FrozenModel):
    """The outcome of a tool invocation, reported back to the assistant."""

    type: Literal[ContentBlockType.TOOL_RESULT] = ContentBlockType.TOOL_RESULT
    tool_use_id: str = Field(default="", description="Identifier of the tool_use block this answers")
    content: JsonValue = Field(default=None, description="Tool output, any JSON value")
    is_error: bool = Field(default=False, description="Whether the tool reported a failure")


ContentBlock = Annotated[TextBlock | ToolUseBlock | ToolResultBlock, Field(discriminator="type")]


# -- Auxiliary records --


class McpServerStatus(FrozenModel):
    """Connection status of one MCP server, as reported in the init system message."""

    name: str = ""
    status: str = ""


class Usage(FrozenModel):
    """Token accounting for a completed query."""

    input_tokens: int = 0
    output_tokens: int = 0


# -- Messages --


class AssistantMessage(FrozenModel):
    """A turn produced by the agent."""

    type: Literal[MessageType.ASSISTANT] = MessageType.ASSISTANT
    session_id: str = Field(default="", description="Session this message belongs to")
    created_at: datetime = Field(description="When the message was emitted")
    content_blocks: tuple[ContentBlock, ...] = Field(default=(), description="Content in emission order")
    parent_tool_use_id: str | None = Field(
        default=None,
        description="Set when the message was produced inside a sub-agent tool call",
    )

    @property
    def content(self) -> tuple[ContentBlock, ...]:
        return self.content_blocks


class UserMessage(FrozenModel):
    """A turn attributed to the user, typically carrying tool results."""

    type: Literal[MessageType.USER] = MessageType.USER
    session_id: str = Field(default="", description="Session this message belongs to")
    created_at: datetime = Field(description="When the message was emitted")
    content_blocks: tuple[ContentBlock, ...] = Field(default=(), description="Content in emission order")
    parent_tool_use_id: str | None = Field(
        default=None,
        description="Set when the message was produced inside a sub-agent tool call",
    )

    @property
    def content(self) -> tuple[ContentBlock, ...]:
        return self.content_blocks


class SystemMessage(FrozenModel):
    """Session metadata, or the fallback for records with an unrecognized type.

    For unrecognized records the raw discriminator is stored as the subtype, so
    no line of output is ever dropped silently.
    """

    type: Literal[MessageType.SYSTEM] = MessageType.SYSTEM
    session_id: str = Field(default="", description="Session this message belongs to")
    created_at: datetime = Field(description="When the message was emitted")
    subtype: str = Field(default="", description="Kind of system record, e.g. init")
    api_key_source: str | None = None
    cwd: str | None = None
    model: str | None = None
    permission_mode: str | None = None
    tools: frozenset[str] = Field(default=frozenset(), description="Tools available in the session")
    mcp_servers: tuple[McpServerStatus, ...] = Field(default=(), description="MCP servers in reported order")

    @property
    def content(self) -> tuple[ContentBlock, ...]:
        return ()


class ResultMessage(FrozenModel):
    """The final summary record of a query."""

    type: Literal[MessageType.RESULT] = MessageType.RESULT
    session_id: str = Field(default="", description="Session this message belongs to")
    created_at: datetime = Field(description="When the message was emitted")
    subtype: str = ""
    duration_ms: int = 0
    duration_api_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    total_cost_usd: float | None = Field(default=None, description="Only set when a positive cost was reported")
    usage: Usage | None = None
    result: str | None = Field(default=None, description="Final answer text, if the agent reported one")

    @property
    def content(self) -> tuple[ContentBlock, ...]:
        if self.result is None:
            return ()
        return (TextBlock(text=self.result),)


Message = Annotated[
    AssistantMessage | UserMessage | SystemMessage | ResultMessage,
    Field(discriminator="type"),
]
