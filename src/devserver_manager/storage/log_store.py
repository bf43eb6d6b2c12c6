"""
Per-PID append log store.

Each tracked process gets one JSON-lines file. Files are rotated lazily: an
append that would push the file past the size ceiling first copies it to a
timestamped sibling and truncates it.
"""

import asyncio
import json
import platform
import re
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles

from ..models import LogEntry, LogLevel, LogQueryResult, OperationResult
from ..utils.config import LogStoreConfig
from ..utils.errors import LogStoreError, ValidationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

_ACTIVE_FILE = re.compile(r"^server_(\d+)_errors\.log$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_log_line(line: str, pid: Optional[int] = None) -> LogEntry:
    """
    Parse one stored line.

    A line that is not a JSON object is kept as an unstructured entry with
    a synthesized timestamp.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict) and "message" in data:
        context = data.get("context")
        return LogEntry(
            timestamp=_parse_timestamp(data.get("timestamp")) or _now(),
            pid=data.get("pid", pid),
            level=LogLevel.parse(data.get("level")),
            message=str(data["message"]),
            structured=True,
            source=data.get("source"),
            action=data.get("action"),
            context=context if isinstance(context, dict) else {},
        )

    logger.warning("malformed_log_line", pid=pid, line=line[:200])
    return LogEntry(
        timestamp=_now(),
        pid=pid,
        level=LogLevel.INFO,
        message=line,
        structured=False,
    )


class LogStore:
    """Append-only per-PID log files with size-based rotation."""

    def __init__(
        self,
        directory: Union[str, Path],
        max_file_size: int = 10 * 1024 * 1024,
        max_entries: int = 1000,
        retention_days: int = 30
    ):
        """
        Initialize the store.

        Args:
            directory: Where per-PID files live
            max_file_size: Size ceiling in bytes before rotation
            max_entries: Cap on entries returned by read()
            retention_days: Default age limit for cleanup_old_logs()
        """
        self.directory = Path(directory)
        self.max_file_size = max_file_size
        self.max_entries = max_entries
        self.retention_days = retention_days
        self._handles: Dict[Path, Any] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: LogStoreConfig) -> "LogStore":
        return cls(
            directory=config.directory,
            max_file_size=config.max_file_size,
            max_entries=config.max_entries,
            retention_days=config.retention_days,
        )

    def log_path(self, pid: int) -> Path:
        return self.directory / f"server_{pid}_errors.log"

    def rotated_files(self, pid: int) -> List[Path]:
        """Rotated siblings for a PID, oldest first."""
        return sorted(self.directory.glob(f"server_{pid}_errors_*.log"))

    @asynccontextmanager
    async def _handle(self, path: Path, mode: str = "a"):
        """Reuse the cached handle for a file and close it when the operation ends."""
        handle = self._handles.get(path)
        owner = handle is None
        if owner:
            handle = await aiofiles.open(path, mode, encoding="utf-8")
            self._handles[path] = handle
        try:
            yield handle
        finally:
            if owner:
                self._handles.pop(path, None)
                await handle.close()

    async def append(
        self,
        pid: int,
        level: Union[str, LogLevel],
        message: str,
        source: Optional[str] = None,
        action: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> LogEntry:
        """
        Append an entry to a PID's log.

        Returns:
            The entry as written

        Raises:
            LogStoreError: The file could not be written
        """
        entry = LogEntry(
            timestamp=_now(),
            pid=pid,
            level=LogLevel.parse(level),
            message=message,
            structured=True,
            source=source,
            action=action,
            context={
                "platform": sys.platform,
                "python_version": platform.python_version(),
                **(context or {}),
            },
        )
        line = json.dumps({
            "timestamp": entry.timestamp.isoformat(timespec="microseconds"),
            "pid": entry.pid,
            "level": entry.level.value,
            "message": entry.message,
            "source": entry.source,
            "action": entry.action,
            "context": entry.context,
        }, default=str) + "\n"

        path = self.log_path(pid)
        async with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                await self._rotate_if_needed(path, len(line.encode("utf-8")))
                async with self._handle(path) as handle:
                    await handle.write(line)
                    await handle.flush()
            except OSError as e:
                raise LogStoreError(f"Failed to write {path}: {e}", cause=e) from e

        return entry

    async def _rotate_if_needed(self, path: Path, incoming: int) -> None:
        if not path.exists():
            return
        size = path.stat().st_size
        if size == 0 or size + incoming <= self.max_file_size:
            return
        await self._rotate(path)

    async def _rotate(self, path: Path) -> Path:
        """Copy the active file to a timestamped sibling and truncate it."""
        cached = self._handles.pop(path, None)
        if cached is not None:
            await cached.close()

        stamp = _now().strftime("%Y%m%dT%H%M%S%fZ")
        rotated = path.with_name(f"{path.stem}_{stamp}{path.suffix}")

        async with aiofiles.open(path, "rb") as f_in:
            content = await f_in.read()
        async with aiofiles.open(rotated, "wb") as f_out:
            await f_out.write(content)
        async with aiofiles.open(path, "w", encoding="utf-8"):
            pass

        logger.info("log_file_rotated", path=str(path), rotated=str(rotated), size=len(content))
        return rotated

    async def _read_all(self, pid: int) -> List[LogEntry]:
        path = self.log_path(pid)
        if not path.exists():
            return []
        try:
            async with self._lock:
                async with aiofiles.open(path, "rb") as handle:
                    content = await handle.read()
        except OSError as e:
            raise LogStoreError(f"Failed to read {path}: {e}", cause=e) from e

        # Torn writes can leave bytes that are not UTF-8
        lines = (raw.decode("utf-8", errors="replace") for raw in content.splitlines())
        return [parse_log_line(line, pid) for line in lines if line.strip()]

    async def read(self, pid: int, limit: Optional[int] = None) -> List[LogEntry]:
        """
        Read a PID's entries, most recent first.

        Args:
            pid: Process ID
            limit: Maximum entries (defaults to max_entries)
        """
        entries = await self._read_all(pid)
        entries.reverse()
        return entries[:self.max_entries if limit is None else limit]

    async def query(self, pid: int) -> LogQueryResult:
        """Read a PID's log into a result payload, never raising."""
        path = self.log_path(pid)
        try:
            entries = await self._read_all(pid)
        except LogStoreError as e:
            logger.error("log_read_failed", pid=pid, error=str(e))
            return LogQueryResult(success=False, error=e.message, file_path=str(path))

        if not entries:
            return LogQueryResult(
                success=True,
                message="No logs found for this server",
                file_path=str(path),
            )

        entries.reverse()
        return LogQueryResult(
            success=True,
            logs=entries[:self.max_entries],
            total_logs=len(entries),
            message=f"Found {len(entries)} log entries",
            file_path=str(path),
        )

    async def clear(self, pid: int) -> OperationResult:
        """Truncate a PID's log, leaving a single marker entry."""
        path = self.log_path(pid)
        if not path.exists():
            return OperationResult(success=True, message=f"No logs to clear for PID {pid}")

        try:
            async with self._lock:
                cached = self._handles.pop(path, None)
                if cached is not None:
                    await cached.close()
                async with aiofiles.open(path, "w", encoding="utf-8"):
                    pass
            await self.append(pid, LogLevel.INFO, "Logs cleared", source="log_store", action="clear")
        except (OSError, LogStoreError) as e:
            logger.error("log_clear_failed", pid=pid, error=str(e))
            return OperationResult(success=False, error=f"Failed to clear logs: {e}")

        return OperationResult(success=True, message=f"Logs cleared for PID {pid}")

    async def get_operation_history(self, pid: int, limit: int = 50) -> List[LogEntry]:
        """Entries recorded for actions (stop, restart, ...) on a PID."""
        entries = await self.read(pid)
        return [e for e in entries if e.action][:limit]

    async def get_all_error_logs_summary(self) -> Dict[str, Any]:
        """Per-PID counts across every active log file."""
        servers = []
        total_entries = 0
        if self.directory.exists():
            for path in sorted(self.directory.iterdir()):
                match = _ACTIVE_FILE.match(path.name)
                if not match:
                    continue
                pid = int(match.group(1))
                entries = await self._read_all(pid)
                total_entries += len(entries)
                servers.append({
                    "pid": pid,
                    "entries": len(entries),
                    "errors": sum(1 for e in entries if e.level is LogLevel.ERROR),
                    "warnings": sum(1 for e in entries if e.level is LogLevel.WARN),
                    "last_entry": entries[-1].timestamp.isoformat() if entries else None,
                    "size": path.stat().st_size,
                    "rotated_files": len(self.rotated_files(pid)),
                })
        return {
            "total_files": len(servers),
            "total_entries": total_entries,
            "servers": servers,
        }

    async def cleanup_old_logs(self, days: Optional[int] = None) -> int:
        """
        Delete log files not modified within the retention window.

        Returns:
            Number of files removed
        """
        days = self.retention_days if days is None else days
        if not self.directory.exists():
            return 0

        cutoff = time.time() - timedelta(days=days).total_seconds()
        removed = 0
        async with self._lock:
            for path in self.directory.glob("server_*_errors*.log"):
                if path in self._handles or path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
                removed += 1

        if removed:
            logger.info("old_logs_removed", count=removed, days=days)
        return removed

    async def export_logs(self, pid: int, format: str = "json") -> str:
        """Render a PID's log oldest-first as JSON or plain text."""
        entries = list(reversed(await self.read(pid)))
        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2)
        if format == "text":
            return "\n".join(
                f"[{e.timestamp.isoformat()}] {e.level.value.upper()}: {e.message}" for e in entries
            )
        raise ValidationError("format", format, "must be 'json' or 'text'")

    async def close(self) -> None:
        """Close any handles still cached."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.close()
