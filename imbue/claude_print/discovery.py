import shutil
import subprocess
from pathlib import Path
from typing import Final

from loguru import logger

from imbue.claude_print.errors import CLINotFoundError
from imbue.claude_print.primitives import DEFAULT_EXECUTABLE_NAME

_NPM_ROOT_TIMEOUT_SECONDS: Final[float] = 10.0

# Location of the executable inside a global npm install of the agent package.
_NPM_PACKAGE_RELATIVE_PATH: Final[Path] = Path("@anthropic-ai") / "claude-code" / "bin" / "claude"


def _find_in_npm_global_root() -> Path | None:
    npm_path = shutil.which("npm")
    if npm_path is None:
        return None
    try:
        result = subprocess.run(
            [npm_path, "root", "-g"],
            capture_output=True,
            text=True,
            timeout=_NPM_ROOT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Could not query npm global root: {}", e)
        return None
    if result.returncode != 0:
        logger.debug("npm root -g exited with {}", result.returncode)
        return None
    candidate = Path(result.stdout.strip()) / _NPM_PACKAGE_RELATIVE_PATH
    return candidate if candidate.exists() else None


def locate_executable(override: Path | str | None = None) -> Path:
    """Resolve the agent executable.

    An explicit override must exist. Without one, PATH is searched first and
    then the global npm install location.
    """
    if override is not None and str(override) != "":
        override_path = Path(override)
        if not override_path.exists():
            raise CLINotFoundError(str(override_path))
        return override_path

    found_on_path = shutil.which(DEFAULT_EXECUTABLE_NAME)
    if found_on_path is not None:
        return Path(found_on_path)

    found_in_npm = _find_in_npm_global_root()
    if found_in_npm is not None:
        return found_in_npm

    raise CLINotFoundError()
