"""
Errors raised while running a query against the agent CLI.

Exception Hierarchy:
    ClaudePrintError (base)
    ├── CLINotFoundError (executable could not be located)
    ├── CLIConnectionError (spawn, pipe, input write or output read failures)
    ├── ProcessError (agent exited with a non-zero status)
    ├── CLIJSONDecodeError (a line of output is not valid protocol JSON)
    ├── QueryCancelledError (caller abort or deadline during streaming)
    └── ConfigParseError (options file could not be loaded)

None of these are retried internally.
"""

from collections.abc import Sequence
from typing import Final

_MAX_REPORTED_OUTPUT_LENGTH: Final[int] = 8000
_MAX_REPORTED_LINE_LENGTH: Final[int] = 500

_INSTALL_HELP_TEXT: Final[str] = (
    "Claude Code not found or not installed.\n\n"
    "Install Claude Code with:\n"
    "  npm install -g @anthropic-ai/claude-code\n"
    "\nIf already installed locally, try:\n"
    '  export PATH="$HOME/node_modules/.bin:$PATH"\n'
    "\nOr point to the executable explicitly:\n"
    '  QueryOptions(executable="/path/to/claude")'
)


def _truncate_middle(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + "\n... OUTPUT TRUNCATED ...\n" + text[-half:]


class ClaudePrintError(Exception):
    """Base exception for all claude-print errors."""


class CLINotFoundError(ClaudePrintError):
    """Raised when the agent executable cannot be located."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        if path:
            message = f"Claude Code not found at: {path}"
        else:
            message = _INSTALL_HELP_TEXT
        super().__init__(message)


class CLIConnectionError(ClaudePrintError):
    """Raised when talking to the agent process over its pipes fails.

    The underlying OSError, if any, is available as __cause__.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"CLI connection error: {message}")

    def __str__(self) -> str:
        text = super().__str__()
        if self.__cause__ is not None:
            text += f" (caused by: {self.__cause__})"
        return text


class ProcessError(ClaudePrintError):
    """Raised when the agent process exits with a non-zero status."""

    def __init__(
        self,
        exit_code: int,
        stderr: str,
        stdout: str = "",
        command: Sequence[str] = (),
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.command = tuple(command)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        detail = self.stderr.strip() or "no diagnostic output captured"
        return f"CLI process error (exit code {self.exit_code}): {_truncate_middle(detail, _MAX_REPORTED_OUTPUT_LENGTH)}"


class CLIJSONDecodeError(ClaudePrintError):
    """Raised when a line of agent output is not a well-formed protocol record.

    The offending line is kept verbatim in raw_line.
    """

    def __init__(self, raw_line: str, reason: str) -> None:
        self.raw_line = raw_line
        self.reason = reason
        shown_line = raw_line
        if len(shown_line) > _MAX_REPORTED_LINE_LENGTH:
            shown_line = shown_line[:_MAX_REPORTED_LINE_LENGTH] + "..."
        super().__init__(f"failed to decode CLI JSON response: {reason} (data: {shown_line})")


class QueryCancelledError(ClaudePrintError):
    """Raised to the consumer of a stream that was cancelled before it completed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Query cancelled: {reason}")


class ConfigParseError(ClaudePrintError):
    """Raised when an options file is unreadable or fails validation."""
