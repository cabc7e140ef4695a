"""Scriptable stand-in for the agent executable, used by tests that spawn real processes."""

import json
import sys
from collections.abc import Mapping
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from typing import Final

from pydantic import Field

from imbue.claude_print.data_types import FrozenModel

_AGENT_SCRIPT: Final[str] = """\
import json
import os
import sys
import time

with open({scenario_path!r}) as f:
    scenario = json.load(f)

prompt = sys.stdin.read() if scenario["read_stdin"] else ""
with open({record_path!r}, "w") as f:
    json.dump(
        {{
            "argv": sys.argv[1:],
            "prompt": prompt,
            "cwd": os.getcwd(),
            "entrypoint": os.environ.get("CLAUDE_CODE_ENTRYPOINT"),
        }},
        f,
    )

for line in scenario["stdout_lines"]:
    sys.stdout.write(line + "\\n")
    sys.stdout.flush()
    if scenario["line_delay_seconds"]:
        time.sleep(scenario["line_delay_seconds"])

sys.stderr.write(scenario["stderr"])
sys.stderr.flush()
if scenario["hang_seconds"]:
    time.sleep(scenario["hang_seconds"])
sys.exit(scenario["exit_code"])
"""


class FakeAgentInvocation(FrozenModel):
    """What the fake agent observed when it was run."""

    argv: tuple[str, ...]
    prompt: str
    cwd: str
    entrypoint: str | None


class FakeAgent(FrozenModel):
    """An executable in a temporary directory that replays a scripted session.

    Each call to script() rewrites the scenario; the executable path stays the same.
    """

    directory: Path = Field(description="Directory holding the executable and its scenario files")

    @property
    def executable(self) -> Path:
        return self.directory / "claude"

    @property
    def _scenario_path(self) -> Path:
        return self.directory / "scenario.json"

    @property
    def _record_path(self) -> Path:
        return self.directory / "invocation.json"

    def script(
        self,
        stdout_lines: Sequence[str | Mapping[str, Any]] = (),
        stderr: str = "",
        exit_code: int = 0,
        line_delay_seconds: float = 0.0,
        hang_seconds: float = 0.0,
        read_stdin: bool = True,
    ) -> Path:
        """Write the scenario and return the path of the executable that plays it."""
        self.directory.mkdir(parents=True, exist_ok=True)
        scenario = {
            "stdout_lines": [line if isinstance(line, str) else json.dumps(line) for line in stdout_lines],
            "stderr": stderr,
            "exit_code": exit_code,
            "line_delay_seconds": line_delay_seconds,
            "hang_seconds": hang_seconds,
            "read_stdin": read_stdin,
        }
        self._scenario_path.write_text(json.dumps(scenario))

        script_path = self.directory / "fake_agent.py"
        script_path.write_text(
            _AGENT_SCRIPT.format(scenario_path=str(self._scenario_path), record_path=str(self._record_path))
        )
        self.executable.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script_path}" "$@"\n')
        self.executable.chmod(0o755)
        return self.executable

    def invocation(self) -> FakeAgentInvocation:
        """Load what the most recent run of the executable recorded."""
        return FakeAgentInvocation.model_validate_json(self._record_path.read_text())


def make_assistant_record(text: str, session_id: str = "session-1") -> dict[str, Any]:
    return {
        "type": "assistant",
        "session_id": session_id,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def make_init_record(session_id: str = "session-1") -> dict[str, Any]:
    return {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "model": "claude-sonnet",
        "cwd": "/work",
        "tools": ["Read", "Bash"],
    }


def make_result_record(result: str = "done", session_id: str = "session-1") -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "success",
        "session_id": session_id,
        "is_error": False,
        "num_turns": 1,
        "duration_ms": 1200,
        "total_cost_usd": 0.01,
        "result": result,
    }
