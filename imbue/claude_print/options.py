import json
from pathlib import Path

from pydantic import Field
from pydantic import JsonValue

from imbue.claude_print.data_types import FrozenModel
from imbue.claude_print.primitives import OutputFormat
from imbue.claude_print.primitives import PermissionMode


class McpServerConfig(FrozenModel):
    """How to launch one MCP server, forwarded to the agent via --mcp-config."""

    transport: tuple[str, ...] = Field(description="Command and arguments that start the server")
    env: dict[str, JsonValue] = Field(default_factory=dict, description="Extra environment for the server")


class QueryOptions(FrozenModel):
    """Configuration for a single query. Every field is optional.

    Only output_format and verbose influence how output is decoded; the rest
    is translated into command-line flags by build_arguments.
    """

    # Core behavior
    model: str | None = Field(default=None, description="Model alias or full model name")
    system_prompt: str | None = Field(default=None, description="Replaces the default system prompt")
    append_system_prompt: str | None = Field(default=None, description="Appended to the default system prompt")
    max_turns: int | None = Field(default=None, description="Limit on agentic turns")

    # Session management (pass-through, nothing is stored locally)
    continue_conversation: bool | None = Field(default=None, description="Continue the most recent session")
    resume: str | None = Field(default=None, description="Session ID to resume")

    # Tools
    allowed_tools: tuple[str, ...] = Field(default=(), description="Tools the agent may use")
    disallowed_tools: tuple[str, ...] = Field(default=(), description="Tools the agent may not use")

    # MCP
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict, description="Inline MCP server definitions")
    mcp_config: str | None = Field(default=None, description="Path to, or JSON text of, an MCP config")

    # Permissions
    permission_mode: PermissionMode | None = None
    permission_prompt_tool: str | None = Field(default=None, description="MCP tool that answers permission prompts")
    dangerously_skip_permissions: bool | None = Field(
        default=None,
        description="Bypass all permission checks; only for sandboxes without internet access",
    )

    # Directories
    cwd: Path | None = Field(default=None, description="Working directory for the agent process")
    add_dirs: tuple[Path, ...] = Field(default=(), description="Additional directories the agent may access")

    # I/O
    input_format: str | None = None
    output_format: OutputFormat | None = Field(default=None, description="Defaults to stream-json")
    debug: bool | None = None
    verbose: bool | None = Field(
        default=None,
        description="None means verbose exactly when stream-json output is requested",
    )

    executable: Path | None = Field(default=None, description="Explicit path to the agent executable")

    @property
    def resolved_output_format(self) -> OutputFormat:
        return self.output_format if self.output_format is not None else OutputFormat.STREAM_JSON

    @property
    def is_verbose(self) -> bool:
        if self.verbose is not None:
            return self.verbose
        return self.resolved_output_format == OutputFormat.STREAM_JSON

    def for_streaming(self) -> "QueryOptions":
        """Return a copy whose output format matches what the streaming decoder expects."""
        return self.model_copy(update={"output_format": OutputFormat.STREAM_JSON})


class QueryRequest(FrozenModel):
    """A prompt together with its options."""

    prompt: str
    options: QueryOptions | None = None


def _prompt_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.system_prompt:
        args.extend(["--system-prompt", options.system_prompt])
    if options.append_system_prompt:
        args.extend(["--append-system-prompt", options.append_system_prompt])
    if options.max_turns is not None:
        args.extend(["--max-turns", str(options.max_turns)])
    return args


def _model_and_tool_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.model:
        args.extend(["--model", options.model])
    if options.allowed_tools:
        args.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.disallowed_tools:
        args.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
    return args


def _session_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.resume:
        args.extend(["--resume", options.resume])
    if options.continue_conversation:
        args.append("--continue")
    return args


def _output_args(options: QueryOptions) -> list[str]:
    args = ["--output-format", str(options.resolved_output_format)]
    if options.is_verbose:
        args.append("--verbose")
    return args


def _mcp_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.mcp_config:
        args.extend(["--mcp-config", options.mcp_config])
    if options.mcp_servers:
        servers = {name: server.model_dump(mode="json") for name, server in options.mcp_servers.items()}
        args.extend(["--mcp-config", json.dumps({"mcpServers": servers})])
    return args


def _permission_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.permission_mode is not None:
        args.extend(["--permission-mode", str(options.permission_mode)])
    if options.permission_prompt_tool:
        args.extend(["--permission-prompt-tool", options.permission_prompt_tool])
    if options.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")
    return args


def _misc_args(options: QueryOptions) -> list[str]:
    args: list[str] = []
    if options.debug:
        args.append("--debug")
    if options.input_format:
        args.extend(["--input-format", options.input_format])
    for directory in options.add_dirs:
        args.extend(["--add-dir", str(directory)])
    return args


def build_arguments(options: QueryOptions) -> list[str]:
    """Translate options into the agent's command-line arguments (excluding the executable).

    The prompt itself is never an argument; it is written to the process's stdin.
    """
    return [
        "--print",
        *_prompt_args(options),
        *_model_and_tool_args(options),
        *_session_args(options),
        *_output_args(options),
        *_mcp_args(options),
        *_permission_args(options),
        *_misc_args(options),
    ]
