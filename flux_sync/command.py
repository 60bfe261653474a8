"""Library for issuing commands using asyncio and returning the result.

Both git plumbing that is not covered by GitPython and every call to
kubectl go through `run`, which enforces a timeout on the subprocess and
limits the number of commands in flight.
"""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 8
_SEM = asyncio.Semaphore(_CONCURRENCY)
DEFAULT_TIMEOUT = 60.0


__all__ = [
    "Command",
    "CommandResult",
    "run",
]


@dataclass
class CommandResult:
    """Output of a finished command."""

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def output(self) -> str:
        """Return stdout decoded as text."""
        return self.stdout.decode("utf-8")


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    redact: tuple[str, ...] = ()
    """Argument values that must not appear in logs or errors."""

    def __str__(self) -> str:
        """Render as a debug string with secrets masked."""
        args = ["<redacted>" if arg in self.redact else arg for arg in self.cmd]
        rendered = " ".join([shlex.quote(arg) for arg in args])
        if self.cwd:
            return f"({self.cwd}) {rendered}"
        return rendered

    async def execute(self, stdin: bytes | None = None) -> CommandResult:
        """Run the command and return its result regardless of exit status."""
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        try:
            out, err = await proc.communicate(stdin)
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        return CommandResult(returncode=proc.returncode or 0, stdout=out, stderr=err)


def _format_error(cmd: Command, result: CommandResult) -> str:
    errors = [f"Command '{cmd}' failed with return code {result.returncode}"]
    if result.stdout:
        errors.append(result.stdout.decode("utf-8", errors="replace"))
    if result.stderr:
        errors.append(result.stderr.decode("utf-8", errors="replace"))
    return "\n".join(errors)


async def run(
    cmd: Command,
    stdin: bytes | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Run the specified command and return stdout.

    A non-zero exit status raises `cmd.exc` with the output attached, and so
    does exceeding `timeout` seconds.
    """
    async with _SEM:
        try:
            result = await asyncio.wait_for(cmd.execute(stdin), timeout)
        except asyncio.TimeoutError as err:
            raise cmd.exc(f"Command '{cmd}' timed out after {timeout}s") from err
    if result.returncode:
        message = _format_error(cmd, result)
        _LOGGER.debug(message)
        raise cmd.exc(message)
    return result.output
