"""
Parsers for the text output of OS process and socket tools.

Each parser is a pure function over the captured output. Lines that cannot
be parsed are skipped with a warning; one bad line never aborts a pass.
"""

import csv
import io
import re
from typing import List, Optional, Tuple

from ..models import ProcessRecord, PortBinding, SocketState
from ..utils.logging import get_logger

logger = get_logger(__name__)

_PS_LINE = re.compile(r"^\s*(\d+)\s+(\d+)\s+(.*?)\s*$")
_LSOF_LINE = re.compile(r"^(\S+)\s+(\d+)\s+.*?\bTCP\s+(\S+)(?:\s+\((\w+)\))?\s*$")
_SS_PID = re.compile(r"pid=(\d+)")

MAX_PID = 4294967295


def is_valid_pid(pid) -> bool:
    """Check that a value is a usable PID (positive, within 32-bit range)."""
    return isinstance(pid, int) and not isinstance(pid, bool) and 0 < pid <= MAX_PID


def safe_parse_pid(value) -> Optional[int]:
    """Parse a PID from a string or int, returning None when invalid."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if is_valid_pid(value) else None
    try:
        pid = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return pid if is_valid_pid(pid) else None


def process_name_from_args(args: str) -> str:
    """Derive a process name from the first token of a command line."""
    args = args.strip()
    if not args:
        return ""
    if args.startswith("["):
        # Kernel threads are reported as [name]
        return args.split("]", 1)[0] + "]"
    if args.startswith('"'):
        executable = args[1:].split('"', 1)[0]
    else:
        executable = args.split()[0]
    return re.split(r"[\\/]", executable)[-1]


def split_address(address: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts.

    Handles IPv6 forms such as "[::1]:3000" and "*:8080".

    Raises:
        ValueError: The address has no valid port
    """
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"no port in address {address!r}")
    port = int(port_text)
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in {address!r}")
    host = host.strip("[]")
    # ss reports interface-scoped addresses as 127.0.0.53%lo
    host = host.split("%", 1)[0]
    return host or "*", port


def parse_ps_output(output: str) -> List[ProcessRecord]:
    """Parse `ps -o pid= -o ppid= -o args=` output."""
    records: List[ProcessRecord] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        match = _PS_LINE.match(line)
        if not match:
            logger.warning("unparsable_process_line", line=line[:200])
            continue
        pid = safe_parse_pid(match.group(1))
        if pid is None:
            logger.warning("invalid_pid_in_process_line", line=line[:200])
            continue
        args = match.group(3)
        records.append(ProcessRecord(
            pid=pid,
            name=process_name_from_args(args),
            command_line=args,
            parent_pid=safe_parse_pid(match.group(2)),
        ))
    return records


def parse_powershell_csv(output: str) -> List[ProcessRecord]:
    """Parse Win32_Process rows exported with ConvertTo-Csv."""
    records: List[ProcessRecord] = []
    reader = csv.DictReader(io.StringIO(output.strip()))
    for row in reader:
        pid = safe_parse_pid(row.get("ProcessId"))
        name = (row.get("Name") or "").strip()
        if pid is None or not name:
            logger.warning("unparsable_process_row", row=str(row)[:200])
            continue
        records.append(ProcessRecord(
            pid=pid,
            name=name,
            command_line=(row.get("CommandLine") or "").strip() or name,
            parent_pid=safe_parse_pid(row.get("ParentProcessId")),
        ))
    return records


def parse_lsof_output(output: str) -> List[PortBinding]:
    """Parse `lsof -nP -iTCP -sTCP:LISTEN` output."""
    bindings: List[PortBinding] = []
    for line in output.splitlines():
        if not line.strip() or line.startswith("COMMAND"):
            continue
        match = _LSOF_LINE.match(line)
        if not match:
            logger.warning("unparsable_socket_line", tool="lsof", line=line[:200])
            continue
        pid = safe_parse_pid(match.group(2))
        address = match.group(3)
        if pid is None or "->" in address:
            continue
        state = SocketState.parse(match.group(4) or "LISTEN")
        if state is not SocketState.LISTEN:
            continue
        try:
            host, port = split_address(address)
        except ValueError:
            logger.warning("unparsable_socket_address", tool="lsof", address=address)
            continue
        bindings.append(PortBinding(pid=pid, port=port, local_address=host, state=state))
    return bindings


def parse_ss_output(output: str) -> List[PortBinding]:
    """Parse `ss -ltnpH` output (one binding per owning PID)."""
    bindings: List[PortBinding] = []
    for line in output.splitlines():
        if not line.strip() or line.startswith("State"):
            continue
        parts = line.split()
        if len(parts) < 4:
            logger.warning("unparsable_socket_line", tool="ss", line=line[:200])
            continue
        state = SocketState.parse(parts[0])
        if state is not SocketState.LISTEN:
            continue
        try:
            host, port = split_address(parts[3])
        except ValueError:
            logger.warning("unparsable_socket_address", tool="ss", address=parts[3])
            continue
        users = " ".join(parts[5:])
        pids = [safe_parse_pid(p) for p in _SS_PID.findall(users)]
        # Sockets owned by other users carry no pid without root
        for pid in dict.fromkeys(p for p in pids if p is not None):
            bindings.append(PortBinding(pid=pid, port=port, local_address=host, state=state))
    return bindings


def parse_netstat_output(output: str) -> List[PortBinding]:
    """Parse Windows `netstat -ano -p tcp` output."""
    bindings: List[PortBinding] = []
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0].upper() != "TCP":
            continue
        if len(parts) < 5:
            logger.warning("unparsable_socket_line", tool="netstat", line=line[:200])
            continue
        state = SocketState.parse(parts[3])
        if state is not SocketState.LISTEN:
            continue
        pid = safe_parse_pid(parts[4])
        if pid is None:
            # PID 0 is the System Idle Process
            continue
        try:
            host, port = split_address(parts[1])
        except ValueError:
            logger.warning("unparsable_socket_address", tool="netstat", address=parts[1])
            continue
        bindings.append(PortBinding(pid=pid, port=port, local_address=host, state=state))
    return bindings
