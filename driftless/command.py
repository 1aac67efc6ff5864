"""Run shell scripts as subprocesses.

The pipeline build command is a user supplied shell script. It runs with
extra environment variables describing the build and its stdout is returned
as text for the caller to inspect.
"""

import asyncio
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import subprocess

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


@dataclass
class Command:
    """A shell script and the environment it runs in."""

    script: str
    """Script passed to the shell."""

    cwd: Path | None = None
    """Working directory, the current directory when unset."""

    env: dict[str, str] = field(default_factory=dict)
    """Variables added to the inherited environment."""

    exc: type[CommandException] = CommandException
    """Exception raised when the script fails."""

    def __str__(self) -> str:
        if self.cwd:
            return f"{self.script} (in {self.cwd})"
        return self.script


async def run(cmd: Command, timeout: float | None = None) -> str:
    """Run the script and return its stdout.

    A non-zero exit status raises `cmd.exc` with stderr (or stdout when
    stderr is empty) in the message. The process is killed on timeout or
    cancellation.
    """
    _LOGGER.debug("Running command: %s", cmd)
    proc = await asyncio.create_subprocess_shell(
        cmd.script,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cmd.cwd,
        env={**os.environ, **cmd.env},
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as timeout_err:
        proc.kill()
        await proc.wait()
        raise cmd.exc(f"Command '{cmd}' timed out after {timeout}s") from timeout_err
    except asyncio.CancelledError:
        proc.kill()
        raise

    stdout = out.decode("utf-8")
    if proc.returncode:
        message = f"Command '{cmd}' failed with return code {proc.returncode}"
        if detail := (err.decode("utf-8").strip() or stdout.strip()):
            message = f"{message}: {detail}"
        _LOGGER.debug(message)
        raise cmd.exc(message)
    return stdout
