"""
Inventory Provider.

Lists processes and listening TCP sockets by shelling out to the platform's
own tools, and answers per-PID questions (details, tree, working directory,
existence) through psutil.
"""

import shutil
import sys
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Sequence

import psutil

from ..models import ProcessRecord, PortBinding, ProcessTree, ProcessRef, ProcessSnapshot
from ..utils.logging import get_logger, sanitize_command_line
from ..utils.errors import CommandError, InventoryError
from .parsers import (
    is_valid_pid,
    parse_ps_output,
    parse_powershell_csv,
    parse_lsof_output,
    parse_ss_output,
    parse_netstat_output,
)
from .runner import CommandRunner

logger = get_logger(__name__)

PS_COMMAND = ("ps", "-A", "-ww", "-o", "pid=", "-o", "ppid=", "-o", "args=")
POWERSHELL_COMMAND = (
    "powershell", "-NoProfile", "-NonInteractive", "-Command",
    "Get-CimInstance Win32_Process | "
    "Select-Object ProcessId,ParentProcessId,Name,CommandLine | "
    "ConvertTo-Csv -NoTypeInformation",
)
SS_COMMAND = ("ss", "-ltnpH")
LSOF_COMMAND = ("lsof", "-nP", "-iTCP", "-sTCP:LISTEN")
NETSTAT_COMMAND = ("netstat", "-ano", "-p", "tcp")


class InventoryProvider:
    """Queries the OS for processes and listening sockets."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        platform: Optional[str] = None,
        command_timeout: float = 10.0
    ):
        """
        Initialize the provider.

        Args:
            runner: Command runner (a default CommandRunner when None)
            platform: sys.platform style identifier, detected when None
            command_timeout: Timeout for each inventory command
        """
        self.runner = runner or CommandRunner(default_timeout=command_timeout)
        self.platform = platform or sys.platform
        self.command_timeout = command_timeout

    @property
    def is_windows(self) -> bool:
        return self.platform.startswith("win")

    def _socket_command(self) -> Sequence[str]:
        if self.is_windows:
            return NETSTAT_COMMAND
        if self.platform.startswith("linux") and shutil.which("ss"):
            return SS_COMMAND
        return LSOF_COMMAND

    async def _capture(self, argv: Sequence[str]) -> str:
        """Run an inventory command, raising InventoryError on failure."""
        result = await self.runner.run(argv, timeout=self.command_timeout)
        # lsof exits 1 when nothing matches
        if not result.ok and not (argv[0] == "lsof" and result.returncode == 1 and not result.stderr.strip()):
            raise InventoryError(
                f"{result.command} exited with {result.returncode}: {result.stderr.strip()[:200]}"
            )
        return result.stdout

    async def list_processes(self) -> List[ProcessRecord]:
        """
        List every process visible to the agent.

        Returns:
            Process records, or an empty list when the OS query fails
        """
        argv = POWERSHELL_COMMAND if self.is_windows else PS_COMMAND
        try:
            output = await self._capture(argv)
        except CommandError as e:
            logger.warning("process_inventory_failed", command=argv[0], error=str(e))
            return []

        records = parse_powershell_csv(output) if self.is_windows else parse_ps_output(output)
        logger.debug("process_inventory_completed", count=len(records))
        return records

    async def list_listening_ports(self) -> List[PortBinding]:
        """
        List TCP sockets in LISTEN state with their owning PID.

        Returns:
            Port bindings, or an empty list when the OS query fails
        """
        argv = self._socket_command()
        try:
            output = await self._capture(argv)
        except CommandError as e:
            logger.warning("socket_inventory_failed", command=argv[0], error=str(e))
            return []

        if argv[0] == "netstat":
            bindings = parse_netstat_output(output)
        elif argv[0] == "ss":
            bindings = parse_ss_output(output)
        else:
            bindings = parse_lsof_output(output)
        logger.debug("socket_inventory_completed", tool=argv[0], count=len(bindings))
        return bindings

    async def get_processes_by_port(self, port: int) -> List[ProcessRecord]:
        """Processes listening on a given port."""
        bindings = [b for b in await self.list_listening_ports() if b.port == port]
        records = []
        for pid in dict.fromkeys(b.pid for b in bindings):
            record = await self.get_process_details(pid)
            if record:
                records.append(record)
        return records

    async def is_port_in_use(self, port: int) -> bool:
        """Check whether any process listens on a port."""
        return any(b.port == port for b in await self.list_listening_ports())

    @staticmethod
    def get_port_distribution(bindings: List[PortBinding]) -> Dict[str, int]:
        """Count listening sockets per port range bucket."""
        buckets: Counter = Counter()
        for binding in bindings:
            if binding.port < 1024:
                buckets["system (0-1023)"] += 1
            elif binding.port < 10000:
                buckets["development (1024-9999)"] += 1
            elif binding.port < 49152:
                buckets["registered (10000-49151)"] += 1
            else:
                buckets["ephemeral (49152-65535)"] += 1
        return dict(buckets)

    # Per-PID queries

    async def process_exists(self, pid: int) -> bool:
        """Check whether a PID belongs to a live (non-zombie) process."""
        if not is_valid_pid(pid):
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # The process exists but belongs to someone else
            return True

    async def get_process_details(self, pid: int) -> Optional[ProcessRecord]:
        """
        Get name and command line for a single PID.

        Returns:
            ProcessRecord, or None if the process does not exist
        """
        if not is_valid_pid(pid):
            return None
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                name = proc.name()
                parent_pid = proc.ppid()
                try:
                    cmdline = proc.cmdline()
                except psutil.AccessDenied:
                    cmdline = []
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            logger.debug("process_details_access_denied", pid=pid)
            return ProcessRecord(pid=pid, name="", command_line="")

        return ProcessRecord(
            pid=pid,
            name=name,
            command_line=" ".join(cmdline) or name,
            parent_pid=parent_pid,
        )

    async def get_process_tree(self, pid: int) -> Optional[ProcessTree]:
        """
        Get a process with its parent PID and direct children.

        Returns:
            ProcessTree, or None if the process does not exist
        """
        record = await self.get_process_details(pid)
        if record is None:
            return None

        children: List[ProcessRef] = []
        try:
            for child in psutil.Process(pid).children(recursive=False):
                try:
                    children.append(ProcessRef(pid=child.pid, name=child.name()))
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("process_children_unavailable", pid=pid, error=str(e))

        return ProcessTree(
            pid=record.pid,
            name=record.name,
            command_line=record.command_line,
            parent_pid=record.parent_pid,
            children=tuple(children),
        )

    async def get_working_directory(self, pid: int) -> Optional[str]:
        """Current working directory of a process, when readable."""
        try:
            return psutil.Process(pid).cwd() or None
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    async def snapshot(self, pid: int) -> Optional[ProcessSnapshot]:
        """
        Capture argv and working directory needed to relaunch a process.

        Returns:
            ProcessSnapshot, or None if the process does not exist
        """
        if not is_valid_pid(pid):
            return None
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                name = proc.name()
                argv = tuple(proc.cmdline())
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            logger.warning("snapshot_access_denied", pid=pid)
            return ProcessSnapshot(pid=pid, name="", argv=(), command_line="", cwd=None)

        cwd = await self.get_working_directory(pid)
        snapshot = ProcessSnapshot(
            pid=pid,
            name=name,
            argv=argv,
            command_line=" ".join(argv),
            cwd=cwd,
        )
        logger.debug(
            "process_snapshot_taken",
            pid=pid,
            command=sanitize_command_line(snapshot.command_line),
            cwd=cwd,
        )
        return snapshot

    async def get_process_resources(self, pid: int) -> Optional[Dict[str, Any]]:
        """Memory, CPU and thread usage for a process."""
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                memory = proc.memory_info()
                cpu_times = proc.cpu_times()
                return {
                    "pid": pid,
                    "memory_rss": memory.rss,
                    "memory_vms": memory.vms,
                    "cpu_user": cpu_times.user,
                    "cpu_system": cpu_times.system,
                    "num_threads": proc.num_threads(),
                    "create_time": datetime.fromtimestamp(
                        proc.create_time(), tz=timezone.utc
                    ).isoformat(),
                    "status": proc.status(),
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
