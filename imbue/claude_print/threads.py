import threading
from typing import Any
from typing import Callable

from loguru import logger


class WorkerThread(threading.Thread):
    """Daemon thread that remembers the exception its target raised.

    Exceptions listed in expected_exceptions are part of normal operation (for
    example a protocol error that is reported to the caller through another
    channel) and are recorded without being logged as a crash.
    """

    def __init__(
        self,
        target: Callable[..., Any],
        args: tuple = (),
        name: str | None = None,
        expected_exceptions: tuple[type[BaseException], ...] = (),
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._work = target
        self._work_args = args
        self._expected_exceptions = expected_exceptions
        self._exception: BaseException | None = None

    def run(self) -> None:
        try:
            self._work(*self._work_args)
        except BaseException as e:
            self._exception = e
            if not isinstance(e, self._expected_exceptions):
                logger.opt(exception=e).error("Error in thread '{}'", self.name)

    @property
    def exception(self) -> BaseException | None:
        """The exception raised by the target, if any. Only meaningful once the thread has finished."""
        return self._exception
