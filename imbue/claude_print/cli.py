import json
import os
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import assert_never

import click
from loguru import logger

from imbue.claude_print.config import LOG_LEVEL_ENV_VAR
from imbue.claude_print.config import load_options
from imbue.claude_print.data_types import AssistantMessage
from imbue.claude_print.data_types import ContentBlock
from imbue.claude_print.data_types import Message
from imbue.claude_print.data_types import ResultMessage
from imbue.claude_print.data_types import SystemMessage
from imbue.claude_print.data_types import TextBlock
from imbue.claude_print.data_types import ToolResultBlock
from imbue.claude_print.data_types import ToolUseBlock
from imbue.claude_print.data_types import UserMessage
from imbue.claude_print.errors import ClaudePrintError
from imbue.claude_print.logging import setup_logging
from imbue.claude_print.primitives import OutputFormat
from imbue.claude_print.query import query
from imbue.claude_print.query import query_stream


def _format_block(block: ContentBlock) -> str:
    match block:
        case TextBlock():
            return block.text
        case ToolUseBlock():
            return f"[tool_use {block.name} {json.dumps(block.input)}]"
        case ToolResultBlock():
            marker = "tool_error" if block.is_error else "tool_result"
            return f"[{marker} {block.tool_use_id}]"
        case _ as unreachable:
            assert_never(unreachable)


def format_message(message: Message) -> str:
    """Render a message as a single human-readable line (or a few, for multi-block turns)."""
    match message:
        case AssistantMessage():
            return "assistant: " + "\n".join(_format_block(block) for block in message.content_blocks)
        case UserMessage():
            return "user: " + "\n".join(_format_block(block) for block in message.content_blocks)
        case SystemMessage():
            details = f" model={message.model}" if message.model else ""
            return f"system ({message.subtype}){details}"
        case ResultMessage():
            status = "error" if message.is_error else "ok"
            cost = f" cost=${message.total_cost_usd:.4f}" if message.total_cost_usd is not None else ""
            text = f"\n{message.result}" if message.result is not None else ""
            return f"result ({status}) turns={message.num_turns}{cost}{text}"
        case _ as unreachable:
            assert_never(unreachable)


def _emit(messages: Iterable[Message], is_json: bool) -> None:
    for message in messages:
        if is_json:
            click.echo(message.model_dump_json())
        else:
            click.echo(format_message(message))


@click.command(name="claude-print")
@click.argument("prompt", nargs=-1)
@click.option("--stream/--batch", "is_streaming", default=True, show_default=True, help="Print messages as they arrive")
@click.option("--model", default=None, help="Model alias or full model name")
@click.option("--max-turns", type=int, default=None, help="Limit on agentic turns")
@click.option("--allowed-tool", "allowed_tools", multiple=True, help="Tool the agent may use (repeatable)")
@click.option(
    "--output-format",
    type=click.Choice([str(f) for f in OutputFormat]),
    default=None,
    help="Agent output format (batch mode only; streaming always uses stream-json)",
)
@click.option("--cwd", type=click.Path(exists=True, file_okay=False, path_type=Path), default=None)
@click.option("--executable", type=click.Path(path_type=Path), default=None, help="Path to the agent executable")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="TOML file with an [options] table",
)
@click.option("--timeout", type=float, default=None, help="Cancel a streaming query after this many seconds")
@click.option("--json", "is_json", is_flag=True, help="Print one JSON object per message")
@click.option(
    "--log-level",
    default=lambda: os.environ.get(LOG_LEVEL_ENV_VAR, "WARNING"),
    help="Log level for diagnostics on stderr",
)
def main(
    prompt: tuple[str, ...],
    is_streaming: bool,
    model: str | None,
    max_turns: int | None,
    allowed_tools: tuple[str, ...],
    output_format: str | None,
    cwd: Path | None,
    executable: Path | None,
    config_path: Path | None,
    timeout: float | None,
    is_json: bool,
    log_level: str,
) -> None:
    """Send PROMPT to the agent CLI and print the decoded messages.

    Reads the prompt from stdin when no PROMPT is given.
    """
    setup_logging(log_level)
    prompt_text = " ".join(prompt) if prompt else sys.stdin.read()
    if not prompt_text.strip():
        raise click.UsageError("A prompt is required, either as arguments or on stdin.")

    try:
        options = load_options(config_path)
        overrides = {
            "model": model,
            "max_turns": max_turns,
            "allowed_tools": allowed_tools or None,
            "output_format": OutputFormat(output_format) if output_format is not None else None,
            "cwd": cwd,
            "executable": executable,
        }
        options = options.model_copy(update={key: value for key, value in overrides.items() if value is not None})

        if is_streaming:
            with query_stream(prompt_text, options, timeout=timeout) as stream:
                _emit(stream, is_json)
        else:
            _emit(query(prompt_text, options), is_json)
    except ClaudePrintError as e:
        logger.debug("Query failed: {!r}", e)
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    main()
