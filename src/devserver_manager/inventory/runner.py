"""
Out-of-process command execution.

Every OS tool the agent invokes goes through a CommandRunner so the
inventory and termination code can be exercised with a fake runner.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from ..utils.logging import get_logger
from ..utils.errors import CommandError, CommandTimeoutError

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished command."""
    argv: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)


class CommandRunner:
    """Runs external commands with a timeout."""

    def __init__(self, default_timeout: float = 10.0, encoding: str = "utf-8"):
        self.default_timeout = default_timeout
        self.encoding = encoding

    async def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            argv: Program and arguments
            timeout: Seconds to wait before killing the command

        Returns:
            CommandResult with decoded stdout/stderr

        Raises:
            CommandError: The program could not be started
            CommandTimeoutError: The program did not finish in time
        """
        argv = tuple(str(a) for a in argv)
        timeout = self.default_timeout if timeout is None else timeout
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CommandError(f"Cannot execute {argv[0]}: {e}", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.warning("command_timed_out", command=argv[0], timeout=timeout)
            raise CommandTimeoutError(
                f"{argv[0]} did not finish within {timeout}s", cause=e
            ) from e

        duration = time.monotonic() - started
        result = CommandResult(
            argv=argv,
            returncode=process.returncode,
            stdout=stdout.decode(self.encoding, errors="replace"),
            stderr=stderr.decode(self.encoding, errors="replace"),
            duration=duration,
        )
        logger.debug(
            "command_finished",
            command=argv[0],
            returncode=result.returncode,
            duration_ms=round(duration * 1000, 1),
        )
        return result
