"""Library for issuing commands using asyncio and returning the result."""

import asyncio
from abc import ABC, abstractmethod
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from collections.abc import Sequence
import os
from typing import TYPE_CHECKING

from .exceptions import CommandException

if TYPE_CHECKING:
    from .output import LineWriter

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
DEFAULT_TIMEOUT = 60.0


# No public API
__all__: list[str] = []


class Task(ABC):
    """An instance of a async task to execute."""

    @abstractmethod
    async def run(self, stdin: bytes | None = None) -> bytes:
        """Execute the task and return the result."""


class Stash(Task):
    """A task that feeds fixed content into the next command in a pipe."""

    def __init__(self, out: bytes) -> None:
        """Initialize Stash."""
        self._out = out

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the task."""
        return self._out


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


@dataclass
class Command(Task):
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success (e.g. for diff)."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float | None = DEFAULT_TIMEOUT
    """Seconds to wait for a captured command, or None to wait forever."""

    merge_stderr: bool = False
    """Capture stderr interleaved with stdout."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        return f"{cwd}{self.string}"

    def _env(self) -> dict[str, str]:
        return {
            **os.environ,
            **(self.env if self.env else {}),
        }

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        proc = await asyncio.create_subprocess_shell(
            self.string,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if self.merge_stderr else subprocess.PIPE,
            cwd=self.cwd,
            env=self._env(),
        )
        try:
            out, err = await proc.communicate(stdin)
        except asyncio.CancelledError:
            _kill(proc)
            raise
        if proc.returncode:
            if self.retcodes and proc.returncode in self.retcodes:
                return out
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out

    async def stream(self, out: "LineWriter", stdin: bytes | None = None) -> None:
        """Run the command, copying stdout and stderr to the writer as it runs."""
        _LOGGER.debug("Streaming command: %s", self)
        proc = await asyncio.create_subprocess_shell(
            self.string,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=self.cwd,
            env=self._env(),
        )
        if proc.stdout is None or (stdin is not None and proc.stdin is None):
            _kill(proc)
            raise self.exc(f"Command '{self}' has no pipes to stream")
        feed: asyncio.Task[None] | None = None
        if stdin is not None and proc.stdin is not None:
            feed = asyncio.create_task(_feed(proc.stdin, stdin))
        try:
            async for line in proc.stdout:
                out.write(line)
            await proc.wait()
            if feed:
                await feed
        except asyncio.CancelledError:
            _kill(proc)
            if feed:
                feed.cancel()
            raise
        finally:
            out.flush()
        if proc.returncode and not (self.retcodes and proc.returncode in self.retcodes):
            raise self.exc(
                f"Command '{self}' failed with return code {proc.returncode}"
            )


async def _feed(writer: asyncio.StreamWriter, data: bytes) -> None:
    """Write data to the stdin of a process and close it."""
    try:
        writer.write(data)
        await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        _LOGGER.debug("Process closed stdin early")
    finally:
        writer.close()


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a process whose caller went away."""
    if proc.returncode is None:
        _LOGGER.debug("Killing process %s", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def _run_piped_with_sem(cmds: Sequence[Task]) -> str:
    """Run a set of commands, piped together, returning stdout of last."""
    stdin = None
    out = None
    for cmd in cmds:
        timeout = cmd.timeout if isinstance(cmd, Command) else DEFAULT_TIMEOUT
        try:
            out = await asyncio.wait_for(cmd.run(stdin), timeout)
        except asyncio.exceptions.TimeoutError as err:
            if isinstance(cmd, Command):
                raise cmd.exc(f"Command '{cmd}' timed out") from err
            raise err
        stdin = out
    return out.decode("utf-8") if out else ""


async def run_piped(cmds: Sequence[Task]) -> str:
    """Run a set of commands, piped together, returning stdout of last."""
    async with _SEM:
        result = await _run_piped_with_sem(cmds)
    return result


async def run(cmd: Task) -> str:
    """Run the specified command and return stdout."""
    return await run_piped([cmd])

