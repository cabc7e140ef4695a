import shlex
import subprocess
from collections.abc import Iterator
from collections.abc import Mapping
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from typing import Final
from typing import IO
from typing import Self

from loguru import logger

from imbue.claude_print.data_types import FrozenModel
from imbue.claude_print.errors import CLIConnectionError
from imbue.claude_print.errors import ProcessError
from imbue.claude_print.threads import WorkerThread

_TERMINATE_GRACE_SECONDS: Final[float] = 5.0
_KILL_WAIT_SECONDS: Final[float] = 2.0
_STDERR_READER_JOIN_SECONDS: Final[float] = 5.0


class ProcessExit(FrozenModel):
    """Exit status of the agent process together with everything it wrote to stderr."""

    returncode: int
    stderr: str
    command: tuple[str, ...]

    def check(self) -> Self:
        if self.returncode != 0:
            raise ProcessError(exit_code=self.returncode, stderr=self.stderr, command=self.command)
        return self


class CLIProcess:
    """Owns one running agent process and its three pipes.

    stdin is written exactly once and then closed, stdout is consumed by a
    single reader, and stderr is drained by a background thread from the moment
    the process starts so the child can never block on a full diagnostic pipe.
    Stderr content is only used to build errors; it never reaches the decoder.
    """

    def __init__(self, popen: subprocess.Popen[bytes], command: Sequence[str]) -> None:
        self._popen = popen
        self._command = tuple(command)
        self._stderr_lines: list[bytes] = []
        self._stderr_reader = WorkerThread(
            target=self._drain_stderr,
            name=f"stderr reader (pid {popen.pid})",
            expected_exceptions=(OSError, ValueError),
        )
        self._stderr_reader.start()

    @classmethod
    def start(
        cls,
        executable: Path | str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> Self:
        """Spawn the agent with all three standard streams piped."""
        command = (str(executable), *args)
        try:
            popen = subprocess.Popen(
                command,
                cwd=cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except (OSError, ValueError) as e:
            raise CLIConnectionError("failed to start Claude CLI") from e
        logger.debug("Started agent process (pid {}): {}", popen.pid, shlex.join(command))
        return cls(popen, command)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    def poll(self) -> int | None:
        return self._popen.poll()

    def write_input(self, prompt: str) -> None:
        """Write the prompt and close stdin, which the agent treats as end of prompt."""
        stdin = self._popen.stdin
        assert stdin is not None
        try:
            try:
                stdin.write(prompt.encode("utf-8"))
                stdin.flush()
            finally:
                stdin.close()
        except (OSError, ValueError) as e:
            raise CLIConnectionError("failed to write prompt to stdin") from e
        logger.debug("Wrote {} character prompt to pid {}", len(prompt), self.pid)

    def iter_output_lines(self) -> Iterator[bytes]:
        """Yield raw stdout lines as soon as each one is complete."""
        stdout = self._popen.stdout
        assert stdout is not None
        try:
            for line in stdout:
                logger.trace("stdout (pid {}): {}", self.pid, line)
                yield line
        except (OSError, ValueError) as e:
            raise CLIConnectionError("error reading CLI output") from e

    def read_all_output(self) -> bytes:
        """Block until stdout is closed and return everything written to it."""
        stdout = self._popen.stdout
        assert stdout is not None
        try:
            return stdout.read()
        except (OSError, ValueError) as e:
            raise CLIConnectionError("error reading CLI output") from e

    def wait(self) -> ProcessExit:
        """Block until the process exits, then collect its complete stderr."""
        returncode = self._popen.wait()
        self._stderr_reader.join(_STDERR_READER_JOIN_SECONDS)
        if self._stderr_reader.is_alive():
            # A grandchild may still hold the pipe open; report what we have so far.
            logger.warning("stderr of pid {} is still open after exit", self.pid)
        stderr = b"".join(self._stderr_lines).decode("utf-8", errors="replace")
        logger.debug("Agent process {} exited with {}", self.pid, returncode)
        return ProcessExit(returncode=returncode, stderr=stderr, command=self._command)

    def terminate(self, grace_seconds: float = _TERMINATE_GRACE_SECONDS) -> None:
        """Stop the process with SIGTERM, escalating to SIGKILL after grace_seconds."""
        if self._popen.poll() is not None:
            return
        logger.debug("Terminating agent process {}", self.pid)
        self._popen.terminate()
        try:
            self._popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Agent process {} didn't exit within {} seconds of SIGTERM, killing it", self.pid, grace_seconds)
            self._popen.kill()
            try:
                self._popen.wait(timeout=_KILL_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.error("Agent process {} didn't die after kill()", self.pid)

    def close(self) -> None:
        """Terminate the process if needed and release its pipes.

        Must only be called once nothing else is reading stdout.
        """
        self.terminate()
        self._stderr_reader.join(_STDERR_READER_JOIN_SECONDS)
        streams: tuple[IO[bytes] | None, ...] = (self._popen.stdin, self._popen.stdout)
        if not self._stderr_reader.is_alive():
            streams += (self._popen.stderr,)
        for stream in streams:
            if stream is not None and not stream.closed:
                try:
                    stream.close()
                except OSError as e:
                    logger.debug("Ignoring error while closing pipe of pid {}: {}", self.pid, e)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_value: BaseException | None, traceback: Any) -> None:
        self.close()

    def _drain_stderr(self) -> None:
        stderr = self._popen.stderr
        assert stderr is not None
        for line in stderr:
            logger.trace("stderr (pid {}): {}", self.pid, line)
            self._stderr_lines.append(line)
