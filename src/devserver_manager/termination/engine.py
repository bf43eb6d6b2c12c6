"""
Multi-strategy termination engine.

Each stop request walks a small state machine:

    PENDING -> VERIFY_EXISTS -> GRACEFUL -> FORCE -> TOOL_SPECIFIC -> SUCCEEDED | EXHAUSTED

The safety gate runs before anything touches the OS. After every command
the engine waits for the stage's settle delay and re-polls existence; the
first strategy after which the process is gone ends the ladder.
"""

import asyncio
import sys
from typing import Awaitable, Callable, Dict, Iterable, Optional

from ..detection.classifier import ServerClassifier
from ..detection.rules import runtime_family
from ..inventory.parsers import is_valid_pid
from ..inventory.provider import InventoryProvider
from ..inventory.runner import CommandRunner
from ..models import (
    BatchResult,
    LogLevel,
    ProcessRecord,
    RestartResult,
    TerminationAttempt,
    TerminationResult,
    TerminationState,
)
from ..storage.log_store import LogStore
from ..utils.config import TerminationConfig
from ..utils.errors import (
    CommandError,
    DevServerError,
    FailureKind,
    LogStoreError,
    ProcessNotFoundError,
    RestartError,
    SafetyRejectedError,
    TerminationExhaustedError,
    ValidationError,
    error_context,
)
from ..utils.logging import get_logger, sanitize_command_line
from .launcher import ProcessLauncher
from .strategies import STAGE_ORDER, Strategy, build_ladder

logger = get_logger(__name__)

LOG_SOURCE = "termination_engine"

_TERMINAL_STATE_BY_KIND = {
    FailureKind.NOT_FOUND: TerminationState.NOT_FOUND,
    FailureKind.SAFETY_REJECTED: TerminationState.REJECTED,
    FailureKind.INVALID_PID: TerminationState.REJECTED,
    FailureKind.EXHAUSTED: TerminationState.EXHAUSTED,
}


class TerminationEngine:
    """Stops, restarts and batch-stops processes."""

    def __init__(
        self,
        inventory: InventoryProvider,
        log_store: Optional[LogStore] = None,
        classifier: Optional[ServerClassifier] = None,
        config: Optional[TerminationConfig] = None,
        runner: Optional[CommandRunner] = None,
        platform: Optional[str] = None,
        launcher: Optional[ProcessLauncher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the engine.

        Args:
            inventory: Used for existence checks, details and restart snapshots
            log_store: Per-PID diagnostics (optional)
            classifier: Supplies the agent identity and protected-process checks
            config: Delays and command timeout
            runner: Executes termination commands
            platform: sys.platform style identifier, detected when None
            launcher: Starts the replacement process on restart
            sleep: Awaitable delay, replaceable in tests
        """
        self.inventory = inventory
        self.log_store = log_store
        self.classifier = classifier or ServerClassifier()
        self.config = config or TerminationConfig()
        self.runner = runner or CommandRunner(default_timeout=self.config.command_timeout)
        self.platform = platform or sys.platform
        self.launcher = launcher or ProcessLauncher(self.platform)
        self._sleep = sleep

    async def stop(self, pid: int) -> TerminationResult:
        """
        Stop a single process.

        Args:
            pid: Target process ID

        Returns:
            TerminationResult; failures carry an error_kind and never raise
        """
        result = TerminationResult(pid=pid, success=False)
        try:
            with error_context("termination_engine", "stop", pid=pid):
                record = await self._safety_gate(pid)

                self._transition(result, TerminationState.VERIFY_EXISTS)
                if record is None or not await self.inventory.process_exists(pid):
                    raise ProcessNotFoundError(f"Process {pid} not found")

                await self._run_ladder(result, record)
        except DevServerError as e:
            await self._fail(result, e)

        return result

    async def _safety_gate(self, pid: int) -> Optional[ProcessRecord]:
        """
        Reject invalid targets, the agent itself and protected processes.

        Returns:
            The target's details, or None when it does not exist
        """
        if not is_valid_pid(pid):
            raise ValidationError("pid", pid, "must be a positive integer")
        if self.classifier.identity.owns_pid(pid):
            raise SafetyRejectedError(f"Refusing to terminate the agent's own process ({pid})")

        record = await self.inventory.get_process_details(pid)
        if record is None:
            return None
        if not record.name or not record.command_line:
            # Unreadable identity, typically a process owned by another user
            raise SafetyRejectedError(
                f"Refusing to terminate process {pid}: its name and command line could not be read"
            )
        if self.classifier.is_agent_process(pid, record.command_line):
            raise SafetyRejectedError(f"Refusing to terminate the agent's own process ({pid})")
        if self.classifier.is_protected(record):
            raise SafetyRejectedError(
                f"Refusing to terminate protected process {record.name or pid}"
            )
        return record

    async def _run_ladder(self, result: TerminationResult, record: ProcessRecord) -> None:
        pid = result.pid
        ladder = build_ladder(self.platform, runtime_family(record.name), self.config)
        await self._record(
            pid, LogLevel.INFO, f"Stopping {record.name or pid}", action="stop",
            context={"command": sanitize_command_line(record.command_line)},
        )

        for stage in STAGE_ORDER:
            strategies = ladder[stage]
            if not strategies:
                logger.debug("termination_stage_skipped", pid=pid, stage=stage.value)
                continue

            self._transition(result, TerminationState(stage.value))
            for strategy in strategies:
                attempt = await self._attempt(pid, strategy)
                result.attempts.append(attempt)
                if attempt.succeeded:
                    result.success = True
                    result.method = stage.value
                    result.message = f"Process {pid} terminated using {stage.value} strategy"
                    self._transition(result, TerminationState.SUCCEEDED)
                    await self._record(pid, LogLevel.INFO, result.message, action=stage.value)
                    logger.info("process_terminated", pid=pid, method=stage.value,
                                attempts=len(result.attempts))
                    return

        tried = ", ".join(a.command_tried for a in result.attempts)
        raise TerminationExhaustedError(tried=tried)

    async def _attempt(self, pid: int, strategy: Strategy) -> TerminationAttempt:
        argv = strategy.render(pid)
        command = " ".join(argv)
        error = None

        try:
            outcome = await self.runner.run(argv, timeout=self.config.command_timeout)
            if outcome.ok:
                await self._sleep(strategy.settle_delay)
            else:
                error = outcome.stderr.strip() or f"exit code {outcome.returncode}"
        except CommandError as e:
            error = e.message

        gone = not await self.inventory.process_exists(pid)
        attempt = TerminationAttempt(
            pid=pid,
            strategy=strategy.stage,
            command_tried=command,
            succeeded=gone,
            error=None if gone else (error or "process still running"),
        )

        logger.debug("termination_attempt", pid=pid, stage=strategy.stage.value,
                     command=command, succeeded=gone, error=attempt.error)
        await self._record(
            pid,
            LogLevel.INFO if gone else LogLevel.WARN,
            f"{strategy.stage.value} attempt {'succeeded' if gone else 'failed'}: {command}",
            action=strategy.stage.value,
            context={"error": attempt.error} if attempt.error else None,
        )
        return attempt

    def _transition(self, result: TerminationResult, state: TerminationState) -> None:
        logger.debug("termination_state", pid=result.pid, previous=result.final_state.value, state=state.value)
        result.final_state = state

    async def _fail(self, result: TerminationResult, error: DevServerError) -> None:
        result.success = False
        result.error = error.message
        result.error_kind = error.error_kind
        self._transition(result, _TERMINAL_STATE_BY_KIND.get(error.error_kind, result.final_state))

        if isinstance(error, TerminationExhaustedError):
            result.message = f"Tried: {error.kwargs.get('tried', '')}"

        logger.warning("stop_failed", pid=result.pid, kind=error.error_kind.value, error=error.message)
        if error.error_kind is not FailureKind.INVALID_PID:
            await self._record(result.pid, LogLevel.ERROR, error.message, action="stop",
                               context={"kind": error.error_kind.value})

    async def _record(
        self,
        pid: int,
        level: LogLevel,
        message: str,
        action: Optional[str] = None,
        context: Optional[Dict] = None
    ) -> None:
        if self.log_store is None:
            return
        try:
            await self.log_store.append(pid, level, message, source=LOG_SOURCE,
                                        action=action, context=context)
        except LogStoreError as e:
            logger.warning("log_store_write_failed", pid=pid, error=e.message)

    async def stop_many(self, pids: Iterable[int]) -> BatchResult:
        """
        Stop several processes one after another.

        Duplicate PIDs are stopped once. Results keep input order.
        """
        results: Dict[int, TerminationResult] = {}
        for pid in dict.fromkeys(pids):
            results[pid] = await self.stop(pid)

        successful = sum(1 for r in results.values() if r.success)
        failed = len(results) - successful
        logger.info("batch_stop_completed", total=len(results), successful=successful, failed=failed)
        return BatchResult(
            success=failed == 0,
            total=len(results),
            successful=successful,
            failed=failed,
            results=results,
        )

    async def restart(self, pid: int) -> RestartResult:
        """
        Stop a process and relaunch its command line in its working directory.

        Returns:
            RestartResult with the new PID on success
        """
        result = RestartResult(success=False, old_pid=pid)
        try:
            if not is_valid_pid(pid):
                raise ValidationError("pid", pid, "must be a positive integer")
            snapshot = await self.inventory.snapshot(pid)
            if snapshot is None:
                raise ProcessNotFoundError(f"Process {pid} not found")
            if not snapshot.argv:
                raise RestartError(f"Command line of process {pid} is unavailable")
        except DevServerError as e:
            return self._restart_failed(result, e)

        stop_result = await self.stop(pid)
        if not stop_result.success:
            result.error = stop_result.error
            result.error_kind = stop_result.error_kind
            result.message = "Failed to stop the original process"
            return result

        await self._sleep(self.config.restart_delay)

        try:
            result.new_pid = await self.launcher.launch(snapshot)
        except DevServerError as e:
            await self._record(pid, LogLevel.ERROR, e.message, action="restart")
            return self._restart_failed(result, e)

        result.success = True
        result.message = f"Server restarted with PID {result.new_pid}"
        await self._record(pid, LogLevel.INFO, result.message, action="restart",
                           context={"new_pid": result.new_pid, "cwd": snapshot.cwd})
        await self._record(result.new_pid, LogLevel.INFO, f"Started as restart of PID {pid}",
                           action="restart", context={"old_pid": pid})
        return result

    def _restart_failed(self, result: RestartResult, error: DevServerError) -> RestartResult:
        logger.warning("restart_failed", pid=result.old_pid, kind=error.error_kind.value, error=error.message)
        result.error = error.message
        result.error_kind = error.error_kind
        return result
