"""Detached relaunch of a stopped server."""

import asyncio
import subprocess
import sys
from typing import Optional

from ..models import ProcessSnapshot
from ..utils.errors import LaunchError
from ..utils.logging import get_logger, sanitize_command_line

logger = get_logger(__name__)


class ProcessLauncher:
    """
    Starts a command detached from the agent.

    The agent records the new PID and does not supervise the process after
    launch.
    """

    def __init__(self, platform: Optional[str] = None):
        self.platform = platform or sys.platform

    async def launch(self, snapshot: ProcessSnapshot) -> int:
        """
        Relaunch a snapshot's argv in its working directory.

        Returns:
            PID of the new process

        Raises:
            LaunchError: The command could not be started
        """
        return await asyncio.to_thread(self._spawn, snapshot)

    def _spawn(self, snapshot: ProcessSnapshot) -> int:
        kwargs = {
            "cwd": snapshot.cwd or None,
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
        }
        if self.platform.startswith("win"):
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            process = subprocess.Popen(list(snapshot.argv), **kwargs)
        except (OSError, ValueError) as e:
            raise LaunchError(f"Failed to relaunch {snapshot.name}: {e}", cause=e) from e

        logger.info(
            "process_relaunched",
            old_pid=snapshot.pid,
            new_pid=process.pid,
            command=sanitize_command_line(snapshot.command_line),
            cwd=snapshot.cwd,
        )
        return process.pid
