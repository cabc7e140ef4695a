import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from typing import Final

from loguru import logger

_LOG_FORMAT: Final[str] = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "WARNING") -> None:
    """Replace loguru's default sink with a stderr sink at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT)


@contextmanager
def log_span(message: str, *args: Any, **context: Any) -> Iterator[None]:
    """Log message at debug on entry and again at trace with the elapsed time on exit.

    Keyword arguments are bound to every log record emitted inside the span.
    """
    with logger.contextualize(**context):
        logger.debug(message, *args)
        start_time = time.monotonic()
        is_failed = False
        try:
            yield
        except BaseException:
            is_failed = True
            raise
        finally:
            elapsed = time.monotonic() - start_time
            outcome = "failed after" if is_failed else "done in"
            logger.trace(message + " [" + outcome + " {:.3f} sec]", *args, elapsed)
