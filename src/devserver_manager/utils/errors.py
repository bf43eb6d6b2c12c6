"""
Error handling framework for devserver-manager.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Failure kinds that callers can branch on without parsing messages
- Structured error payloads
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("devserver-manager.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    PROCESS = "process"
    SAFETY = "safety"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    STORAGE = "storage"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


class FailureKind(str, Enum):
    """Machine-readable reason attached to a failed termination or restart."""
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"
    SAFETY_REJECTED = "safety_rejected"
    INVALID_PID = "invalid_pid"
    RESTART_FAILED = "restart_failed"
    LAUNCH_FAILED = "launch_failed"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    pid: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class DevServerError(Exception):
    """Base exception for all devserver-manager errors."""

    code: str = "DEVSERVER_ERROR"
    default_message: str = "An error occurred in devserver-manager"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    error_kind: FailureKind = FailureKind.INTERNAL
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """Initialize the error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "kind": self.error_kind.value,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "pid": self.context.pid,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(DevServerError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify DEVSERVER_* environment overrides",
        ]


class ValidationError(DevServerError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING
    error_kind = FailureKind.INVALID_PID

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


# External command errors

class CommandError(DevServerError):
    """An external command could not be executed."""
    code = "COMMAND_ERROR"
    default_message = "External command failed"
    category = ErrorCategory.SYSTEM
    severity = ErrorSeverity.WARNING
    is_retryable = True


class CommandTimeoutError(CommandError):
    """An external command did not finish within its timeout."""
    code = "COMMAND_TIMEOUT"
    default_message = "External command timed out"


class InventoryError(CommandError):
    """An OS inventory query failed."""
    code = "INVENTORY_ERROR"
    default_message = "Failed to query the operating system"


# Process errors

class ProcessNotFoundError(DevServerError):
    """The target PID does not belong to a running process."""
    code = "PROCESS_NOT_FOUND"
    default_message = "Process not found"
    category = ErrorCategory.PROCESS
    severity = ErrorSeverity.WARNING
    error_kind = FailureKind.NOT_FOUND

    def get_suggestions(self) -> List[str]:
        return ["Refresh the server list; the process may have already exited"]


class SafetyRejectedError(DevServerError):
    """The target is the agent itself or a protected process."""
    code = "SAFETY_REJECTED"
    default_message = "Refusing to terminate a protected process"
    category = ErrorCategory.SAFETY
    severity = ErrorSeverity.WARNING
    error_kind = FailureKind.SAFETY_REJECTED


class TerminationExhaustedError(DevServerError):
    """Every termination strategy ran and the process is still alive."""
    code = "TERMINATION_EXHAUSTED"
    default_message = (
        "Process is still running after all termination strategies. "
        "It may require administrator privileges."
    )
    category = ErrorCategory.PROCESS
    error_kind = FailureKind.EXHAUSTED

    def get_suggestions(self) -> List[str]:
        return [
            "Retry with elevated privileges",
            "Check whether the process is owned by another user",
        ]


class RestartError(DevServerError):
    """A restart could not be prepared."""
    code = "RESTART_ERROR"
    default_message = "Restart failed"
    category = ErrorCategory.PROCESS
    error_kind = FailureKind.RESTART_FAILED


class LaunchError(RestartError):
    """The replacement process could not be started."""
    code = "LAUNCH_ERROR"
    default_message = "Failed to relaunch the server"
    error_kind = FailureKind.LAUNCH_FAILED


# Storage errors

class LogStoreError(DevServerError):
    """Per-PID log file could not be read or written."""
    code = "LOG_STORE_ERROR"
    default_message = "Log store operation failed"
    category = ErrorCategory.STORAGE


@contextmanager
def error_context(component: str, operation: str, pid: Optional[int] = None, **metadata):
    """
    Context manager that attaches context to errors raised inside it.

    Unexpected exceptions are wrapped in DevServerError so the caller only
    ever deals with the project's own hierarchy.

    Args:
        component: Component name
        operation: Operation name
        pid: Target PID, when the operation has one
        **metadata: Additional context metadata
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        pid=pid,
        metadata=metadata
    )

    try:
        yield context
    except DevServerError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        if e.context.pid is None:
            e.context.pid = pid
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        wrapped = DevServerError(message=str(e), context=context, cause=e)
        logger.error(
            "unexpected_error_in_context",
            error=wrapped.to_dict(),
            exc_info=True
        )
        raise wrapped from e


__all__ = [
    'DevServerError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'FailureKind',
    'ConfigurationError',
    'ValidationError',
    'CommandError',
    'CommandTimeoutError',
    'InventoryError',
    'ProcessNotFoundError',
    'SafetyRejectedError',
    'TerminationExhaustedError',
    'RestartError',
    'LaunchError',
    'LogStoreError',
    'error_context',
]
