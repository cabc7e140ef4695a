"""Running a prompt through the agent CLI in batch or streaming mode.

Both modes spawn the agent with the same argument builder, write the prompt on
a separate thread so stdin and stdout can never deadlock each other, and
classify failures identically:

1. a decode or read error is terminal as soon as it happens,
2. otherwise a non-zero exit raises ProcessError (chained from any input write failure),
3. otherwise an input write failure raises CLIConnectionError.
"""

import os
import threading
from collections.abc import Iterator
from collections.abc import Mapping
from contextlib import suppress
from queue import Empty
from queue import Full
from queue import Queue
from typing import Any
from typing import Final
from typing import Self

from loguru import logger

from imbue.claude_print.data_types import Message
from imbue.claude_print.decoder import decode_line
from imbue.claude_print.decoder import decode_text_output
from imbue.claude_print.discovery import locate_executable
from imbue.claude_print.errors import CLIConnectionError
from imbue.claude_print.errors import ClaudePrintError
from imbue.claude_print.errors import ProcessError
from imbue.claude_print.errors import QueryCancelledError
from imbue.claude_print.logging import log_span
from imbue.claude_print.options import QueryOptions
from imbue.claude_print.options import QueryRequest
from imbue.claude_print.options import build_arguments
from imbue.claude_print.primitives import DEFAULT_STREAM_CAPACITY
from imbue.claude_print.primitives import ENTRYPOINT_ENV_VAR
from imbue.claude_print.primitives import ENTRYPOINT_VALUE
from imbue.claude_print.primitives import OutputFormat
from imbue.claude_print.process import CLIProcess
from imbue.claude_print.threads import WorkerThread

_THREAD_JOIN_SECONDS: Final[float] = 10.0

CANCELLED_BY_CALLER: Final[str] = "cancelled by caller"
DEADLINE_EXCEEDED: Final[str] = "deadline exceeded"
CONSUMER_STOPPED: Final[str] = "consumer stopped iterating"


def build_child_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for the agent process: the caller's environment plus the entrypoint marker.

    The current process's environment is never modified.
    """
    environment = dict(os.environ if base is None else base)
    environment[ENTRYPOINT_ENV_VAR] = ENTRYPOINT_VALUE
    return environment


def _spawn(options: QueryOptions) -> CLIProcess:
    executable = locate_executable(options.executable)
    return CLIProcess.start(
        executable,
        build_arguments(options),
        cwd=options.cwd,
        env=build_child_environment(),
    )


def _start_input_writer(process: CLIProcess, prompt: str) -> WorkerThread:
    writer = WorkerThread(
        target=process.write_input,
        args=(prompt,),
        name=f"prompt writer (pid {process.pid})",
        expected_exceptions=(CLIConnectionError,),
    )
    writer.start()
    return writer


def _finish_after_eof(process: CLIProcess, writer: WorkerThread) -> None:
    """Reconcile the exit status with the input writer's outcome once stdout is exhausted."""
    process_exit = process.wait()
    writer.join(_THREAD_JOIN_SECONDS)
    write_error = writer.exception
    try:
        process_exit.check()
    except ProcessError as e:
        raise e from write_error
    if write_error is not None:
        raise write_error


# -- Batch mode --


def query(prompt: str, options: QueryOptions | None = None) -> list[Message]:
    """Run the prompt to completion and return every decoded message.

    Nothing is returned on failure: partial results are discarded.
    """
    options = options or QueryOptions()
    output_format = options.resolved_output_format
    with log_span("Running batch query", output_format=str(output_format)):
        with _spawn(options) as process:
            writer = _start_input_writer(process, prompt)
            output = process.read_all_output()
            if output_format == OutputFormat.TEXT:
                _finish_after_eof(process, writer)
                return [decode_text_output(output.decode("utf-8", errors="replace"))]
            messages = [decode_line(line) for line in output.splitlines() if line]
            _finish_after_eof(process, writer)
    logger.debug("Batch query produced {} messages", len(messages))
    return messages


def query_with_request(request: QueryRequest) -> list[Message]:
    return query(request.prompt, request.options)


# -- Streaming mode --


class _EndOfStream:
    """Queue sentinel carrying the terminal error, if any."""

    def __init__(self, error: BaseException | None) -> None:
        self.error = error


class MessageStream:
    """Live sequence of messages decoded while the agent is still running.

    Messages arrive in exactly the order the agent wrote them. The queue between
    the decode loop and the consumer is bounded, so a slow consumer holds back
    decoding instead of letting memory grow. Iterating ends normally when the
    agent exits successfully and raises the terminal error otherwise.

    cancel() (or an expiring timeout) stops delivery immediately: the consumer
    gets QueryCancelledError instead of any pending message, and the agent
    process is terminated. A stream supports a single consumer.
    """

    def __init__(
        self,
        process: CLIProcess,
        prompt: str,
        capacity: int = DEFAULT_STREAM_CAPACITY,
        timeout: float | None = None,
    ) -> None:
        self._process = process
        self._messages: Queue[Message | _EndOfStream] = Queue(maxsize=capacity)
        self._cancel_event = threading.Event()
        self._cancel_reason = CANCELLED_BY_CALLER
        self._is_finished = False
        self._writer = _start_input_writer(process, prompt)
        self._reader = WorkerThread(
            target=self._run_decode_loop,
            name=f"output decoder (pid {process.pid})",
            expected_exceptions=(ClaudePrintError,),
        )
        self._reader.start()
        self._deadline: threading.Timer | None = None
        if timeout is not None:
            self._deadline = threading.Timer(timeout, self.cancel, args=(DEADLINE_EXCEEDED,))
            self._deadline.daemon = True
            self._deadline.start()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self, reason: str = CANCELLED_BY_CALLER) -> None:
        """Abort the stream. Safe to call from any thread, and more than once."""
        if self._cancel_event.is_set():
            return
        self._cancel_reason = reason
        self._cancel_event.set()
        logger.debug("Cancelling stream for pid {}: {}", self._process.pid, reason)
        # Killing the agent closes its stdout, which unblocks the decode loop.
        self._process.terminate()
        # Make room in case the decode loop is blocked handing over a message.
        self._drain()
        # The decode loop may already be gone, so wake a blocked consumer directly.
        with suppress(Full):
            self._messages.put_nowait(_EndOfStream(None))

    def close(self) -> None:
        """Cancel the stream if it is still running and release the process."""
        if not self._is_finished:
            self.cancel(CONSUMER_STOPPED)
        if self._deadline is not None:
            self._deadline.cancel()
        # Unblock a decode loop still waiting to hand over a message.
        self._drain()
        self._reader.join(_THREAD_JOIN_SECONDS)
        self._writer.join(_THREAD_JOIN_SECONDS)
        if self._reader.is_alive():
            logger.warning("Decode loop for pid {} is still running, leaving its pipes open", self._process.pid)
            return
        self._process.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_value: BaseException | None, traceback: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[Message]:
        try:
            while True:
                if self._cancel_event.is_set():
                    raise QueryCancelledError(self._cancel_reason)
                item = self._messages.get()
                if self._cancel_event.is_set():
                    raise QueryCancelledError(self._cancel_reason)
                if isinstance(item, _EndOfStream):
                    self._is_finished = True
                    if self._deadline is not None:
                        self._deadline.cancel()
                    if item.error is not None:
                        raise item.error
                    return
                yield item
        finally:
            if not self._is_finished:
                self.cancel(CONSUMER_STOPPED)

    def _drain(self) -> None:
        while True:
            try:
                self._messages.get_nowait()
            except Empty:
                return

    def _run_decode_loop(self) -> None:
        try:
            self._decode_until_eof()
        except BaseException as e:
            if not self._cancel_event.is_set():
                # The agent's remaining output will never be read.
                self._process.terminate()
            self._publish_end(e)
            raise
        else:
            self._publish_end(None)

    def _decode_until_eof(self) -> None:
        for line in self._process.iter_output_lines():
            if self._cancel_event.is_set():
                return
            if not line.rstrip(b"\r\n"):
                continue
            message = decode_line(line)
            if self._cancel_event.is_set():
                return
            self._messages.put(message)
        if self._cancel_event.is_set():
            return
        _finish_after_eof(self._process, self._writer)

    def _publish_end(self, error: BaseException | None) -> None:
        end = _EndOfStream(error)
        if self._cancel_event.is_set():
            # The consumer reports the cancellation no matter what it dequeues next.
            with suppress(Full):
                self._messages.put_nowait(end)
            return
        self._messages.put(end)


def query_stream(
    prompt: str,
    options: QueryOptions | None = None,
    timeout: float | None = None,
    capacity: int = DEFAULT_STREAM_CAPACITY,
) -> MessageStream:
    """Start the agent and return a stream of messages decoded as they are produced.

    The output format is always stream-json regardless of options.output_format.
    Executable lookup and spawn failures are raised here, before any stream exists.
    """
    options = (options or QueryOptions()).for_streaming()
    process = _spawn(options)
    return MessageStream(process, prompt, capacity=capacity, timeout=timeout)


def query_stream_with_request(request: QueryRequest, timeout: float | None = None) -> MessageStream:
    return query_stream(request.prompt, request.options, timeout=timeout)
