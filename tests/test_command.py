"""Tests for command library."""

import asyncio
import io

import pytest

from image_builder.command import Command, Stash, run, run_piped
from image_builder.exceptions import CommandException, DockerException
from image_builder.output import OutputSink


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_run_piped_stash() -> None:
    """Test feeding fixed content into a command."""
    result = await run_piped(
        [
            Stash(b"Hello\n"),
            Command(["sed", "s/Hello/Goodbye/"]),
        ]
    )
    assert result == "Goodbye\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_exception_type() -> None:
    """Test a failing command raises the configured exception."""
    with pytest.raises(DockerException):
        await run(Command(["/bin/false"], exc=DockerException))


async def test_allowed_return_code() -> None:
    """Test a non-zero return code that indicates success."""
    result = await run(Command(["sh", "-c", "echo diff; exit 1"], retcodes=[1]))
    assert result == "diff\n"


async def test_command_timeout() -> None:
    """Test a command that takes longer than its timeout."""
    with pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "5"], timeout=0.1))


async def test_stream_command() -> None:
    """Test copying stdout and stderr of a command to a writer."""
    stream = io.StringIO()
    out = OutputSink(stream).prefixed("[app] ")
    await Command(["sh", "-c", "echo one; echo two >&2; printf three"]).stream(out)
    assert stream.getvalue().splitlines() == ["[app] one", "[app] two", "[app] three"]


async def test_stream_command_stdin() -> None:
    """Test a streamed command reading from stdin."""
    stream = io.StringIO()
    out = OutputSink(stream).prefixed()
    await Command(["cat"]).stream(out, stdin=b"from stdin\n")
    assert stream.getvalue() == "from stdin\n"


async def test_stream_command_ignores_stdin() -> None:
    """Test a streamed command that exits without reading all of stdin."""
    stream = io.StringIO()
    out = OutputSink(stream).prefixed()
    await Command(["sh", "-c", "echo done"]).stream(out, stdin=b"x" * 1_000_000)
    assert stream.getvalue() == "done\n"


async def test_stream_failed_command() -> None:
    """Test a streamed command that fails still copies its output."""
    stream = io.StringIO()
    out = OutputSink(stream).prefixed()
    with pytest.raises(CommandException, match="return code 2"):
        await Command(["sh", "-c", "echo partial; exit 2"]).stream(out)
    assert stream.getvalue() == "partial\n"


async def test_cancel_stream_command() -> None:
    """Test cancelling a streamed command stops waiting for it."""
    out = OutputSink(io.StringIO()).prefixed()
    task = asyncio.create_task(Command(["sleep", "30"]).stream(out))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
