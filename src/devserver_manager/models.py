"""
Data model shared by inventory, detection, termination and the log store.

Records produced by an inventory or detection pass are frozen: a changed
process state yields new records on the next pass instead of mutating old ones.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from .utils.errors import FailureKind


UNKNOWN_PORT = "Unknown"


class Protocol(str, Enum):
    """Transport protocol of a socket binding."""
    TCP = "TCP"


class SocketState(str, Enum):
    """Socket states reported by the OS tools we parse."""
    LISTEN = "LISTEN"
    ESTABLISHED = "ESTABLISHED"
    TIME_WAIT = "TIME_WAIT"
    CLOSE_WAIT = "CLOSE_WAIT"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str) -> "SocketState":
        normalized = value.strip().strip("()").upper().replace("-", "_")
        if normalized == "LISTENING":
            return cls.LISTEN
        try:
            return cls(normalized)
        except ValueError:
            return cls.OTHER


class ServerType(str, Enum):
    """Server families the classifier can produce."""
    NODE = "node"
    REACT = "react"
    PYTHON = "python"
    STATIC = "static"


class Importance(str, Enum):
    """Importance label stamped on classified servers."""
    DEVELOPMENT = "development"
    UNKNOWN = "unknown"


class TerminationStage(str, Enum):
    """Escalation tiers of the termination ladder."""
    GRACEFUL = "graceful"
    FORCE = "force"
    TOOL_SPECIFIC = "tool_specific"


class TerminationState(str, Enum):
    """States of a single stop request."""
    PENDING = "pending"
    VERIFY_EXISTS = "verify_exists"
    GRACEFUL = "graceful"
    FORCE = "force"
    TOOL_SPECIFIC = "tool_specific"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


class LogLevel(str, Enum):
    """Levels accepted by the per-PID log store."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        normalized = str(value or "").strip().lower()
        if normalized == "warning":
            return cls.WARN
        try:
            return cls(normalized)
        except ValueError:
            return cls.INFO


@dataclass(frozen=True)
class ProcessRecord:
    """One row of the OS process table."""
    pid: int
    name: str
    command_line: str = ""
    parent_pid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "command_line": self.command_line,
            "parent_pid": self.parent_pid,
        }


@dataclass(frozen=True)
class PortBinding:
    """A TCP socket owned by a process."""
    pid: int
    port: int
    local_address: str
    protocol: Protocol = Protocol.TCP
    state: SocketState = SocketState.LISTEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "port": self.port,
            "protocol": self.protocol.value,
            "local_address": self.local_address,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class EnrichedProcess:
    """A process record with at most one listening port attached."""
    pid: int
    name: str
    command_line: str = ""
    port: Optional[int] = None
    protocol: Optional[Protocol] = None
    local_address: Optional[str] = None
    observed_at: Optional[datetime] = None

    @classmethod
    def from_process(
        cls,
        process: ProcessRecord,
        binding: Optional[PortBinding] = None,
        observed_at: Optional[datetime] = None
    ) -> "EnrichedProcess":
        """Overlay a socket binding (if any) on a process record."""
        return cls(
            pid=process.pid,
            name=process.name,
            command_line=process.command_line,
            port=binding.port if binding else None,
            protocol=binding.protocol if binding else None,
            local_address=binding.local_address if binding else None,
            observed_at=observed_at,
        )


@dataclass(frozen=True)
class ServerRecord:
    """A process the classifier identified as a stoppable development server."""
    pid: int
    name: str
    type: ServerType
    port: str
    url: Optional[str]
    command: str
    start_time: Optional[datetime]
    category: str
    process_name: str = ""
    importance: Importance = Importance.DEVELOPMENT
    is_safe_to_stop: bool = True

    @property
    def port_number(self) -> Optional[int]:
        """The port as an integer, or None when unknown."""
        if self.port == UNKNOWN_PORT:
            return None
        try:
            return int(self.port)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "type": self.type.value,
            "port": self.port,
            "url": self.url,
            "command": self.command,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "category": self.category,
            "process_name": self.process_name,
            "importance": self.importance.value,
            "is_safe_to_stop": self.is_safe_to_stop,
        }


@dataclass(frozen=True)
class ServerInsight:
    """Extra presentation hints derived from a ServerRecord."""
    pid: int
    confidence: int
    tags: Tuple[str, ...]
    priority: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "priority": self.priority,
        }


@dataclass(frozen=True)
class ProcessRef:
    """Minimal reference to a child process."""
    pid: int
    name: str


@dataclass(frozen=True)
class ProcessTree:
    """A process together with its parent PID and direct children."""
    pid: int
    name: str
    command_line: str
    parent_pid: Optional[int]
    children: Tuple[ProcessRef, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "command_line": self.command_line,
            "parent_pid": self.parent_pid,
            "children": [{"pid": c.pid, "name": c.name} for c in self.children],
        }


@dataclass(frozen=True)
class ProcessSnapshot:
    """What restart needs to relaunch a process."""
    pid: int
    name: str
    argv: Tuple[str, ...]
    command_line: str
    cwd: Optional[str]


@dataclass
class TerminationAttempt:
    """One command issued while trying to stop a process."""
    pid: int
    strategy: TerminationStage
    command_tried: str
    succeeded: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "strategy": self.strategy.value,
            "command_tried": self.command_tried,
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass
class TerminationResult:
    """Outcome of a stop request."""
    pid: int
    success: bool
    method: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    attempts: List[TerminationAttempt] = field(default_factory=list)
    final_state: TerminationState = TerminationState.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "success": self.success,
            "method": self.method,
            "message": self.message,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "final_state": self.final_state.value,
        }


@dataclass
class BatchResult:
    """Aggregate outcome of stopping several processes."""
    success: bool
    total: int
    successful: int
    failed: int
    results: Dict[int, TerminationResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": {pid: r.to_dict() for pid, r in self.results.items()},
        }


@dataclass
class RestartResult:
    """Outcome of a restart request."""
    success: bool
    old_pid: int
    new_pid: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "old_pid": self.old_pid,
            "new_pid": self.new_pid,
            "message": self.message,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(frozen=True)
class LogEntry:
    """One entry from a per-PID log file."""
    timestamp: datetime
    pid: Optional[int]
    level: LogLevel
    message: str
    structured: bool = True
    source: Optional[str] = None
    action: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "pid": self.pid,
            "level": self.level.value,
            "message": self.message,
            "structured": self.structured,
            "source": self.source,
            "action": self.action,
            "context": self.context,
        }


@dataclass
class LogQueryResult:
    """Result of reading a PID's log."""
    success: bool
    logs: List[LogEntry] = field(default_factory=list)
    total_logs: int = 0
    message: Optional[str] = None
    file_path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "logs": [entry.to_dict() for entry in self.logs],
            "total_logs": self.total_logs,
            "message": self.message,
            "file_path": self.file_path,
            "error": self.error,
        }


@dataclass
class OperationResult:
    """Generic success/message/error payload."""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "error": self.error}
