"""Asynchronous execution of external OS commands."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from usbwatch.errors import CommandFailure

logger = logging.getLogger(__name__)

RunCommand = Callable[[str], Awaitable["CommandResult"]]


@dataclass(slots=True)
class CommandResult:
    """Captured output of a finished command."""

    command: str
    stdout: str
    returncode: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandFailure(
                self.command,
                f"exited with status {self.returncode}",
                returncode=self.returncode,
                stderr=self.stderr.strip(),
            )
        return self


async def run_command(command: str, *, timeout: Optional[float] = None) -> CommandResult:
    """Run ``command`` through the shell without blocking the event loop.

    Raises :class:`CommandFailure` when the process cannot be spawned or does
    not finish within ``timeout`` seconds; a non-zero exit status is reported
    through :attr:`CommandResult.returncode` instead.
    """
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandFailure(command, str(exc)) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _terminate(process)
        raise CommandFailure(command, f"timed out after {timeout:g}s") from exc
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    return CommandResult(
        command=command,
        stdout=stdout.decode("utf-8", errors="replace"),
        returncode=process.returncode if process.returncode is not None else -1,
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    with contextlib.suppress(Exception):
        await process.wait()


class CommandRunner:
    """Callable wrapper binding a timeout to :func:`run_command`."""

    def __init__(self, timeout: Optional[float] = 15.0) -> None:
        self.timeout = timeout

    async def __call__(self, command: str) -> CommandResult:
        logger.debug("running command: %s", command)
        return await run_command(command, timeout=self.timeout)


__all__ = ["CommandResult", "CommandRunner", "RunCommand", "run_command"]
