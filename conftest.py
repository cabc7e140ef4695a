from pathlib import Path

import pytest
from click.testing import CliRunner

from imbue.claude_print.config import EXECUTABLE_ENV_VAR
from imbue.claude_print.config import LOG_LEVEL_ENV_VAR
from imbue.claude_print.config import MODEL_ENV_VAR
from imbue.claude_print.testing import FakeAgent


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner for testing CLI commands."""
    return CliRunner()


@pytest.fixture
def fake_agent(tmp_path: Path) -> FakeAgent:
    """A scriptable agent executable living in its own temporary directory."""
    return FakeAgent(directory=tmp_path / "fake_agent")


@pytest.fixture(autouse=True)
def isolate_claude_print_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's own configuration from leaking into tests."""
    for name in (EXECUTABLE_ENV_VAR, MODEL_ENV_VAR, LOG_LEVEL_ENV_VAR):
        monkeypatch.delenv(name, raising=False)
