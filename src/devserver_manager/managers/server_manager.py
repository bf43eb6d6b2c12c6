"""
Server manager.

The single entry point used by the CLI and any other front end. It wires
inventory, detection, termination and the log store together and keeps the
detection cache consistent after stop and restart.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..detection.classifier import ServerClassifier
from ..detection.orchestrator import DetectionOrchestrator
from ..detection.rules import AgentIdentity
from ..inventory.parsers import safe_parse_pid
from ..inventory.provider import InventoryProvider
from ..inventory.runner import CommandRunner
from ..models import (
    BatchResult,
    LogQueryResult,
    OperationResult,
    ProcessRecord,
    ProcessTree,
    RestartResult,
    ServerInsight,
    ServerRecord,
    TerminationResult,
)
from ..storage.log_store import LogStore
from ..termination.engine import TerminationEngine
from ..termination.launcher import ProcessLauncher
from ..utils.config import AgentConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)

PidLike = Union[int, str]


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STOPPED = "stopped"


def _coerce_pid(pid: PidLike) -> Any:
    parsed = safe_parse_pid(pid)
    return parsed if parsed is not None else pid


class ServerManager:
    """Detects, stops and restarts local development servers."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        runner: Optional[CommandRunner] = None,
        inventory: Optional[InventoryProvider] = None,
        log_store: Optional[LogStore] = None,
        identity: Optional[AgentIdentity] = None,
        launcher: Optional[ProcessLauncher] = None,
        platform: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the manager.

        Args:
            config: Agent configuration (defaults when None)
            runner: Command runner shared by inventory and termination
            inventory: Inventory provider (built from runner when None)
            log_store: Per-PID log store (built from config when None)
            identity: The agent's own PID and launch signatures
            launcher: Starts replacement processes on restart
            platform: sys.platform style identifier, detected when None
            sleep: Awaitable delay used between termination attempts
            clock: Monotonic clock used by the detection cache
        """
        self.config = config or AgentConfig()
        self.runner = runner or CommandRunner(default_timeout=self.config.detection.command_timeout)
        self.inventory = inventory or InventoryProvider(
            runner=self.runner,
            platform=platform,
            command_timeout=self.config.detection.command_timeout,
        )
        self.log_store = log_store or LogStore.from_config(self.config.log_store)
        self.classifier = ServerClassifier(self.config.detection, identity)
        self.detector = DetectionOrchestrator(
            self.inventory,
            classifier=self.classifier,
            config=self.config.detection,
            clock=clock,
        )
        self.terminator = TerminationEngine(
            self.inventory,
            log_store=self.log_store,
            classifier=self.classifier,
            config=self.config.termination,
            runner=self.runner,
            platform=platform,
            launcher=launcher,
            sleep=sleep,
        )
        self.state = ManagerState.UNINITIALIZED

    async def initialize(self) -> None:
        """Prepare the log directory and prune expired logs."""
        self.log_store.directory.mkdir(parents=True, exist_ok=True)
        removed = await self.log_store.cleanup_old_logs()
        self.state = ManagerState.READY
        logger.info("server_manager_initialized", log_dir=str(self.log_store.directory),
                    expired_logs_removed=removed)

    async def shutdown(self) -> None:
        """Release open log handles."""
        await self.log_store.close()
        self.state = ManagerState.STOPPED
        logger.info("server_manager_stopped")

    async def __aenter__(self) -> "ServerManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # Detection

    async def detect_servers(self) -> List[ServerRecord]:
        """Development servers, from cache when fresh."""
        return await self.detector.detect_servers()

    async def force_refresh(self) -> List[ServerRecord]:
        """Run a detection pass regardless of cache age."""
        return await self.detector.force_refresh()

    def clear_cache(self) -> None:
        self.detector.clear_cache()

    def get_server_stats(self) -> Dict[str, Any]:
        return self.detector.get_server_stats()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.detector.get_cache_stats()

    def get_insights(self) -> List[ServerInsight]:
        return self.detector.get_insights()

    # Process queries

    async def get_process_details(self, pid: PidLike) -> Optional[ProcessRecord]:
        parsed = safe_parse_pid(pid)
        if parsed is None:
            return None
        return await self.inventory.get_process_details(parsed)

    async def get_process_tree(self, pid: PidLike) -> Optional[ProcessTree]:
        parsed = safe_parse_pid(pid)
        if parsed is None:
            return None
        return await self.inventory.get_process_tree(parsed)

    # Termination

    async def stop_server(self, pid: PidLike) -> TerminationResult:
        """Stop one server and invalidate the detection cache on success."""
        result = await self.terminator.stop(_coerce_pid(pid))
        if result.success:
            self.clear_cache()
        return result

    async def restart_server(self, pid: PidLike) -> RestartResult:
        """Stop a server and relaunch it detached in its working directory."""
        result = await self.terminator.restart(_coerce_pid(pid))
        if result.success:
            self.clear_cache()
        return result

    async def stop_multiple_servers(self, pids: Iterable[PidLike]) -> BatchResult:
        """Stop several servers sequentially, in the given order."""
        result = await self.terminator.stop_many(_coerce_pid(pid) for pid in pids)
        if result.successful:
            self.clear_cache()
        return result

    async def stop_all_servers(self) -> BatchResult:
        """Stop every server from a fresh detection pass."""
        servers = await self.force_refresh()
        return await self.stop_multiple_servers(s.pid for s in servers)

    # Logs

    async def get_server_error_logs(self, pid: PidLike) -> LogQueryResult:
        parsed = safe_parse_pid(pid)
        if parsed is None:
            return LogQueryResult(success=False, error=f"Invalid PID: {pid}")
        return await self.log_store.query(parsed)

    async def clear_server_error_logs(self, pid: PidLike) -> OperationResult:
        parsed = safe_parse_pid(pid)
        if parsed is None:
            return OperationResult(success=False, error=f"Invalid PID: {pid}")
        return await self.log_store.clear(parsed)
