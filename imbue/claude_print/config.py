import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from typing import Final

from loguru import logger
from pydantic import ValidationError

from imbue.claude_print.errors import ConfigParseError
from imbue.claude_print.options import QueryOptions

# Table of the options file that holds QueryOptions fields.
OPTIONS_TABLE: Final[str] = "options"

EXECUTABLE_ENV_VAR: Final[str] = "CLAUDE_PRINT_EXECUTABLE"
MODEL_ENV_VAR: Final[str] = "CLAUDE_PRINT_MODEL"
LOG_LEVEL_ENV_VAR: Final[str] = "CLAUDE_PRINT_LOG_LEVEL"


def _read_options_table(config_path: Path) -> dict[str, Any]:
    try:
        with config_path.open("rb") as f:
            raw_config = tomllib.load(f)
    except OSError as e:
        raise ConfigParseError(f"Cannot read options file {config_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Options file {config_path} is not valid TOML: {e}") from e

    table = raw_config.get(OPTIONS_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigParseError(f"[{OPTIONS_TABLE}] in {config_path} must be a table")
    return table


def load_options(config_path: Path | None = None, environ: Mapping[str, str] | None = None) -> QueryOptions:
    """Build QueryOptions from an optional TOML file and the environment.

    Precedence (lowest to highest):
    1. QueryOptions defaults
    2. The [options] table of config_path
    3. CLAUDE_PRINT_EXECUTABLE and CLAUDE_PRINT_MODEL
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(_read_options_table(config_path))
        logger.debug("Loaded {} option(s) from {}", len(values), config_path)

    env_executable = environ.get(EXECUTABLE_ENV_VAR)
    if env_executable:
        values["executable"] = env_executable
    env_model = environ.get(MODEL_ENV_VAR)
    if env_model:
        values["model"] = env_model

    try:
        return QueryOptions.model_validate(values)
    except ValidationError as e:
        source = str(config_path) if config_path is not None else "environment"
        raise ConfigParseError(f"Invalid options in {source}:\n{e}") from e
