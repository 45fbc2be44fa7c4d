"""Async shell command runner with timeouts.

Discovery commands are shell pipelines (`ps ... | grep ...`), so they run
through the platform shell rather than exec.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished command."""

    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def empty(self) -> bool:
        return not self.stdout.strip()


class CommandFailed(Exception):
    """A command timed out or exited non-zero with an error message."""

    def __init__(self, command: str, message: str, *, timed_out: bool = False, stderr: str = ""):
        self.command = command
        self.timed_out = timed_out
        self.stderr = stderr
        super().__init__(message)


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def run_command(command: str, timeout: float) -> CommandResult:
    """Run a shell command and capture its output.

    A non-zero exit with nothing on stderr is treated as "no output" (grep
    exits 1 when nothing matches). A non-zero exit with stderr text raises.

    On timeout the process is killed best-effort and CommandFailed is raised
    without waiting for the kill to complete.

    Raises:
        CommandFailed: On timeout or on a non-zero exit with stderr output
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass  # Process already exited
        log.warning("command_timeout", command=command[:200], timeout=timeout)
        raise CommandFailed(
            command, f"Command timed out after {timeout:.1f}s", timed_out=True
        ) from None

    result = CommandResult(
        command=command,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
    if result.returncode != 0 and result.stderr.strip():
        raise CommandFailed(
            command,
            f"Command failed ({result.returncode}): {result.stderr.strip()[:500]}",
            stderr=result.stderr,
        )
    return result

