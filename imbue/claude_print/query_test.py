import json
import time
from pathlib import Path

import pytest

from imbue.claude_print.data_types import AssistantMessage
from imbue.claude_print.data_types import Message
from imbue.claude_print.data_types import ResultMessage
from imbue.claude_print.data_types import SystemMessage
from imbue.claude_print.data_types import TextBlock
from imbue.claude_print.decoder import TEXT_OUTPUT_SESSION_ID
from imbue.claude_print.decoder import TEXT_OUTPUT_SUBTYPE
from imbue.claude_print.errors import CLIConnectionError
from imbue.claude_print.errors import CLIJSONDecodeError
from imbue.claude_print.errors import CLINotFoundError
from imbue.claude_print.errors import ProcessError
from imbue.claude_print.errors import QueryCancelledError
from imbue.claude_print.options import QueryOptions
from imbue.claude_print.options import QueryRequest
from imbue.claude_print.primitives import ENTRYPOINT_ENV_VAR
from imbue.claude_print.primitives import ENTRYPOINT_VALUE
from imbue.claude_print.primitives import OutputFormat
from imbue.claude_print.query import CANCELLED_BY_CALLER
from imbue.claude_print.query import CONSUMER_STOPPED
from imbue.claude_print.query import DEADLINE_EXCEEDED
from imbue.claude_print.query import build_child_environment
from imbue.claude_print.query import query
from imbue.claude_print.query import query_stream
from imbue.claude_print.query import query_stream_with_request
from imbue.claude_print.query import query_with_request
from imbue.claude_print.testing import FakeAgent
from imbue.claude_print.testing import make_assistant_record
from imbue.claude_print.testing import make_init_record
from imbue.claude_print.testing import make_result_record

_TWO_LINE_SESSION = (
    '{"type":"assistant","session_id":"s1","message":{"content":"hi"}}',
    '{"type":"result","session_id":"s1","is_error":false,"num_turns":1}',
)

# Far larger than any pipe buffer, so an agent that never reads stdin makes the write fail.
_OVERSIZED_PROMPT = "x" * 5_000_000


def _assert_two_line_session(messages: list[Message]) -> None:
    assert len(messages) == 2
    assistant, result = messages
    assert isinstance(assistant, AssistantMessage)
    assert assistant.content_blocks == (TextBlock(text="hi"),)
    assert isinstance(result, ResultMessage)
    assert result.is_error is False
    assert result.num_turns == 1


# -- Environment --


def test_child_environment_adds_entrypoint_without_touching_base() -> None:
    """The child environment gains the entrypoint marker without mutating the base."""
    base = {"HOME": "/home/me"}
    environment = build_child_environment(base)
    assert environment == {"HOME": "/home/me", ENTRYPOINT_ENV_VAR: ENTRYPOINT_VALUE}
    assert base == {"HOME": "/home/me"}


# -- Batch mode --


def test_batch_query_decodes_every_line(fake_agent: FakeAgent) -> None:
    """Batch mode returns every decoded message."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION)
    messages = query("say hi", QueryOptions(executable=executable))
    _assert_two_line_session(messages)


def test_batch_query_sends_prompt_on_stdin_with_entrypoint_marker(fake_agent: FakeAgent) -> None:
    """The prompt goes over stdin and the child sees the entrypoint marker."""
    executable = fake_agent.script(stdout_lines=[make_result_record()])
    query("what is in this repo?", QueryOptions(executable=executable, model="sonnet"))

    invocation = fake_agent.invocation()
    assert invocation.prompt == "what is in this repo?"
    assert invocation.entrypoint == ENTRYPOINT_VALUE
    assert invocation.argv == ("--print", "--model", "sonnet", "--output-format", "stream-json", "--verbose")


def test_batch_query_runs_in_requested_directory(fake_agent: FakeAgent, tmp_path: Path) -> None:
    """The agent runs in the requested working directory."""
    workdir = tmp_path / "project"
    workdir.mkdir()
    executable = fake_agent.script(stdout_lines=[make_result_record()])
    query("hello", QueryOptions(executable=executable, cwd=workdir))
    assert Path(fake_agent.invocation().cwd).resolve() == workdir.resolve()


def test_batch_query_skips_blank_lines(fake_agent: FakeAgent) -> None:
    """Empty output lines are skipped."""
    executable = fake_agent.script(stdout_lines=["", _TWO_LINE_SESSION[0], "", _TWO_LINE_SESSION[1], ""])
    _assert_two_line_session(query("hi", QueryOptions(executable=executable)))


def test_batch_query_whitespace_only_line_is_a_decode_error(fake_agent: FakeAgent) -> None:
    """Only truly empty lines are skipped; a line of spaces is malformed output."""
    executable = fake_agent.script(stdout_lines=[_TWO_LINE_SESSION[0], "   ", _TWO_LINE_SESSION[1]])
    with pytest.raises(CLIJSONDecodeError) as exc_info:
        query("hi", QueryOptions(executable=executable))
    assert exc_info.value.raw_line == "   "


def test_batch_query_unread_prompt_with_clean_exit_raises_connection_error(fake_agent: FakeAgent) -> None:
    """A prompt the agent never read is a connection error when the agent still exits 0."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION, read_stdin=False)
    with pytest.raises(CLIConnectionError) as exc_info:
        query(_OVERSIZED_PROMPT, QueryOptions(executable=executable))
    assert isinstance(exc_info.value.__cause__, OSError)


def test_batch_query_non_zero_exit_raises_process_error(fake_agent: FakeAgent) -> None:
    """A non-zero exit discards the messages and raises ProcessError."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION, stderr="auth failed", exit_code=1)
    with pytest.raises(ProcessError) as exc_info:
        query("hi", QueryOptions(executable=executable))
    assert exc_info.value.exit_code == 1
    assert exc_info.value.stderr == "auth failed"


def test_batch_query_decode_error_takes_precedence_over_exit_status(fake_agent: FakeAgent) -> None:
    """A decode error is reported even when the agent also failed."""
    executable = fake_agent.script(stdout_lines=["not json"], exit_code=2)
    with pytest.raises(CLIJSONDecodeError) as exc_info:
        query("hi", QueryOptions(executable=executable))
    assert exc_info.value.raw_line == "not json"


def test_batch_query_text_format_wraps_output(fake_agent: FakeAgent) -> None:
    """Text output becomes a single result message."""
    executable = fake_agent.script(stdout_lines=["The answer is 4.", "Second line."])
    messages = query("2+2?", QueryOptions(executable=executable, output_format=OutputFormat.TEXT))

    assert len(messages) == 1
    result = messages[0]
    assert isinstance(result, ResultMessage)
    assert result.subtype == TEXT_OUTPUT_SUBTYPE
    assert result.session_id == TEXT_OUTPUT_SESSION_ID
    assert result.result == "The answer is 4.\nSecond line.\n"
    assert fake_agent.invocation().argv == ("--print", "--output-format", "text")


def test_batch_query_missing_executable_raises_before_spawning(tmp_path: Path) -> None:
    """A missing executable fails before anything is spawned."""
    with pytest.raises(CLINotFoundError):
        query("hi", QueryOptions(executable=tmp_path / "missing"))


def test_query_with_request(fake_agent: FakeAgent) -> None:
    """A QueryRequest runs like a plain batch query."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION)
    request = QueryRequest(prompt="hi", options=QueryOptions(executable=executable))
    _assert_two_line_session(query_with_request(request))


# -- Streaming mode --


def test_stream_delivers_messages_in_order(fake_agent: FakeAgent) -> None:
    """Streaming delivers more messages than the queue holds, in order."""
    records = [make_init_record()] + [make_assistant_record(f"part {i}") for i in range(25)] + [make_result_record()]
    executable = fake_agent.script(stdout_lines=records)

    with query_stream("go", QueryOptions(executable=executable)) as stream:
        messages = list(stream)

    assert len(messages) == 27
    assert isinstance(messages[0], SystemMessage)
    texts = [message.content_blocks[0].text for message in messages[1:-1]]  # type: ignore[union-attr]
    assert texts == [f"part {i}" for i in range(25)]
    assert isinstance(messages[-1], ResultMessage)


def test_stream_forces_stream_json_output(fake_agent: FakeAgent) -> None:
    """Streaming always asks for verbose stream-json output."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION)
    options = QueryOptions(executable=executable, output_format=OutputFormat.TEXT)
    with query_stream("hi", options) as stream:
        _assert_two_line_session(list(stream))
    argv = fake_agent.invocation().argv
    assert argv[argv.index("--output-format") + 1] == "stream-json"
    assert "--verbose" in argv


def test_stream_process_error_after_delivering_messages(fake_agent: FakeAgent) -> None:
    """Messages before a failing exit are delivered, then ProcessError is raised."""
    executable = fake_agent.script(stdout_lines=[_TWO_LINE_SESSION[0]], stderr="auth failed", exit_code=1)
    received: list[Message] = []

    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        with pytest.raises(ProcessError) as exc_info:
            for message in stream:
                received.append(message)

    assert len(received) == 1
    assert isinstance(received[0], AssistantMessage)
    assert exc_info.value.exit_code == 1
    assert exc_info.value.stderr == "auth failed"


def test_stream_cancel_after_first_message(fake_agent: FakeAgent) -> None:
    """Cancelling inside the loop stops delivery with a cancellation error."""
    executable = fake_agent.script(
        stdout_lines=[make_assistant_record("first"), make_assistant_record("second")],
        line_delay_seconds=30,
    )
    received: list[Message] = []

    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        with pytest.raises(QueryCancelledError) as exc_info:
            for message in stream:
                received.append(message)
                stream.cancel()
        assert stream.is_cancelled

    assert len(received) == 1
    assert exc_info.value.reason == CANCELLED_BY_CALLER


def test_stream_cancel_after_agent_already_finished(fake_agent: FakeAgent) -> None:
    """Cancelling once all output is queued and the agent has exited still ends iteration."""
    executable = fake_agent.script(stdout_lines=[make_assistant_record(f"part {i}") for i in range(3)])
    received: list[Message] = []

    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        with pytest.raises(QueryCancelledError) as exc_info:
            for message in stream:
                received.append(message)
                if len(received) == 1:
                    # Let the decode loop reach EOF and queue the end of the stream.
                    time.sleep(0.5)
                    stream.cancel()

    assert len(received) == 1
    assert exc_info.value.reason == CANCELLED_BY_CALLER


def test_stream_unread_prompt_with_clean_exit_raises_connection_error(fake_agent: FakeAgent) -> None:
    """Messages are delivered, then the failed prompt write is reported on a zero exit."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION, read_stdin=False)
    received: list[Message] = []

    with query_stream(_OVERSIZED_PROMPT, QueryOptions(executable=executable)) as stream:
        with pytest.raises(CLIConnectionError):
            for message in stream:
                received.append(message)

    _assert_two_line_session(received)


def test_stream_unread_prompt_with_failing_exit_raises_process_error(fake_agent: FakeAgent) -> None:
    """A non-zero exit wins over the failed prompt write, which is kept as the cause."""
    executable = fake_agent.script(stderr="bad input", exit_code=3, read_stdin=False)

    with query_stream(_OVERSIZED_PROMPT, QueryOptions(executable=executable)) as stream:
        with pytest.raises(ProcessError) as exc_info:
            list(stream)

    assert exc_info.value.exit_code == 3
    assert exc_info.value.stderr == "bad input"
    assert isinstance(exc_info.value.__cause__, CLIConnectionError)


def test_stream_cancel_while_decode_loop_is_blocked_on_full_queue(fake_agent: FakeAgent) -> None:
    """Cancel unblocks a decode loop waiting on a full queue."""
    records = [make_assistant_record(f"part {i}") for i in range(50)]
    executable = fake_agent.script(stdout_lines=records, hang_seconds=30)

    with query_stream("hi", QueryOptions(executable=executable), capacity=2) as stream:
        iterator = iter(stream)
        first = next(iterator)
        assert isinstance(first, AssistantMessage)
        # Give the decode loop time to fill the queue and block.
        time.sleep(0.5)
        stream.cancel()
        with pytest.raises(QueryCancelledError):
            next(iterator)


def test_stream_timeout_cancels_hung_agent(fake_agent: FakeAgent) -> None:
    """The deadline cancels a stream whose agent hangs."""
    executable = fake_agent.script(stdout_lines=[make_init_record()], hang_seconds=60)
    received: list[Message] = []
    start = time.monotonic()

    with query_stream("hi", QueryOptions(executable=executable), timeout=1.0) as stream:
        with pytest.raises(QueryCancelledError) as exc_info:
            for message in stream:
                received.append(message)

    assert exc_info.value.reason == DEADLINE_EXCEEDED
    assert len(received) == 1
    assert time.monotonic() - start < 30


def test_stream_bogus_content_block_fails_whole_line(fake_agent: FakeAgent) -> None:
    """A bad content block ends the stream and delivers nothing from that line."""
    bogus_line = json.dumps(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}, {"type": "bogus"}]}}
    )
    executable = fake_agent.script(stdout_lines=[make_init_record(), bogus_line, make_result_record()])
    received: list[Message] = []

    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        with pytest.raises(CLIJSONDecodeError) as exc_info:
            for message in stream:
                received.append(message)

    assert exc_info.value.raw_line == bogus_line
    assert len(received) == 1
    assert isinstance(received[0], SystemMessage)


def test_stream_abandoned_iteration_stops_the_agent(fake_agent: FakeAgent) -> None:
    """Breaking out of the loop cancels the stream."""
    executable = fake_agent.script(stdout_lines=[make_init_record()], hang_seconds=60)
    stream = query_stream("hi", QueryOptions(executable=executable))
    for _ in stream:
        break
    stream.close()
    assert stream.is_cancelled


def test_stream_closed_before_iteration_terminates_agent(fake_agent: FakeAgent) -> None:
    """Leaving the context manager unread tears the agent down."""
    executable = fake_agent.script(stdout_lines=[make_init_record()], hang_seconds=60)
    start = time.monotonic()
    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        pass
    assert stream.is_cancelled
    assert time.monotonic() - start < 30


def test_stream_missing_executable_raises_immediately(tmp_path: Path) -> None:
    """A missing executable fails when the stream is created."""
    with pytest.raises(CLINotFoundError):
        query_stream("hi", QueryOptions(executable=tmp_path / "missing"))


def test_query_stream_with_request(fake_agent: FakeAgent) -> None:
    """A QueryRequest streams like a plain streaming query."""
    executable = fake_agent.script(stdout_lines=_TWO_LINE_SESSION)
    request = QueryRequest(prompt="hi", options=QueryOptions(executable=executable))
    with query_stream_with_request(request) as stream:
        _assert_two_line_session(list(stream))
    assert fake_agent.invocation().prompt == "hi"


def test_consumer_stopped_reason_is_recorded(fake_agent: FakeAgent) -> None:
    """Closing the iterator records that the consumer stopped."""
    executable = fake_agent.script(stdout_lines=[make_init_record()], hang_seconds=60)
    with query_stream("hi", QueryOptions(executable=executable)) as stream:
        iterator = iter(stream)
        next(iterator)
        iterator.close()  # type: ignore[attr-defined]
        assert stream.is_cancelled
        with pytest.raises(QueryCancelledError) as exc_info:
            for _ in stream:
                pass
    assert exc_info.value.reason == CONSUMER_STOPPED
