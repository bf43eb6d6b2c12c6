"""
Tests for the termination engine, its strategy ladders and the launcher.
"""

from unittest.mock import AsyncMock

import pytest

from devserver_manager.inventory.runner import CommandResult
from devserver_manager.models import (
    LogLevel,
    ProcessRecord,
    ProcessSnapshot,
    TerminationStage,
    TerminationState,
)
from devserver_manager.termination.engine import TerminationEngine
from devserver_manager.termination.launcher import ProcessLauncher
from devserver_manager.termination.strategies import STAGE_ORDER, build_ladder
from devserver_manager.utils.errors import CommandTimeoutError, FailureKind, LaunchError

from conftest import AGENT_PID, DJANGO_PID, NGINX_PID, REACT_PID, SCRIPT_PID
from mock_helpers import killing_response


@pytest.fixture
def launcher():
    fake = AsyncMock(spec=ProcessLauncher)
    fake.launch.return_value = 5555
    return fake


@pytest.fixture
def engine(fake_inventory, log_store, classifier, termination_config, fake_runner, launcher, sleep_recorder):
    return TerminationEngine(
        fake_inventory,
        log_store=log_store,
        classifier=classifier,
        config=termination_config,
        runner=fake_runner,
        platform="linux",
        launcher=launcher,
        sleep=sleep_recorder,
    )


class TestStop:
    """Test single-target termination."""

    @pytest.mark.asyncio
    async def test_graceful_success(self, engine, fake_runner, fake_inventory):
        fake_runner.responses[("kill", "-TERM", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)

        result = await engine.stop(REACT_PID)

        assert result.success is True
        assert result.method == "graceful"
        assert result.final_state is TerminationState.SUCCEEDED
        assert result.message == f"Process {REACT_PID} terminated using graceful strategy"
        assert len(result.attempts) == 1
        assert result.attempts[0].command_tried == f"kill -TERM {REACT_PID}"
        assert fake_runner.calls == [("kill", "-TERM", str(REACT_PID))]

    @pytest.mark.asyncio
    async def test_escalates_to_force(self, engine, fake_runner, fake_inventory):
        fake_runner.responses[("kill", "-KILL", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)

        result = await engine.stop(REACT_PID)

        assert result.success is True
        assert result.method == "force"
        assert [a.strategy for a in result.attempts] == [
            TerminationStage.GRACEFUL,
            TerminationStage.GRACEFUL,
            TerminationStage.FORCE,
        ]
        assert [a.succeeded for a in result.attempts] == [False, False, True]

    @pytest.mark.asyncio
    async def test_command_error_does_not_abort_ladder(self, engine, fake_runner, fake_inventory):
        fake_runner.responses[("kill", "-TERM", str(REACT_PID))] = CommandTimeoutError("kill timed out")
        fake_runner.responses[("kill", "-INT", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)

        result = await engine.stop(REACT_PID)

        assert result.success is True
        assert result.attempts[0].error == "kill timed out"

    @pytest.mark.asyncio
    async def test_exhausted(self, engine, fake_runner):
        result = await engine.stop(REACT_PID)

        assert result.success is False
        assert result.error_kind is FailureKind.EXHAUSTED
        assert result.final_state is TerminationState.EXHAUSTED
        assert result.error.startswith("Process is still running after all termination strategies")
        assert "not found" not in result.error
        assert "already ended" not in result.error
        assert result.message.startswith("Tried: ")
        # node gets graceful x2, force x1 and tool-specific x2
        assert len(result.attempts) == 5
        assert [tuple(c) for c in fake_runner.calls] == [
            ("kill", "-TERM", str(REACT_PID)),
            ("kill", "-INT", str(REACT_PID)),
            ("kill", "-KILL", str(REACT_PID)),
            ("kill", "-HUP", str(REACT_PID)),
            ("kill", "-QUIT", str(REACT_PID)),
        ]

    @pytest.mark.asyncio
    async def test_exhausted_without_tool_specific_stage(self, engine, fake_inventory):
        fake_inventory.processes[7000] = ProcessRecord(7000, "ruby", "ruby server.rb")
        fake_inventory.alive.add(7000)

        result = await engine.stop(7000)

        assert result.error_kind is FailureKind.EXHAUSTED
        assert len(result.attempts) == 3

    @pytest.mark.asyncio
    async def test_failed_command_recorded_as_error(self, engine, fake_runner):
        fake_runner.responses["kill"] = CommandResult(
            argv=("kill",), returncode=1, stderr="Operation not permitted"
        )

        result = await engine.stop(DJANGO_PID)

        assert result.error_kind is FailureKind.EXHAUSTED
        assert result.attempts[0].error == "Operation not permitted"

    @pytest.mark.asyncio
    async def test_not_found_is_distinct_from_exhausted(self, engine, fake_runner, fake_inventory):
        fake_inventory.kill(REACT_PID)

        result = await engine.stop(REACT_PID)

        assert result.success is False
        assert result.error_kind is FailureKind.NOT_FOUND
        assert result.final_state is TerminationState.NOT_FOUND
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_refuses_own_pid(self, engine, fake_runner):
        result = await engine.stop(AGENT_PID)

        assert result.error_kind is FailureKind.SAFETY_REJECTED
        assert result.final_state is TerminationState.REJECTED
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_refuses_protected_process(self, engine, fake_runner):
        result = await engine.stop(NGINX_PID)

        assert result.error_kind is FailureKind.SAFETY_REJECTED
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_refuses_unreadable_process(self, engine, fake_runner, fake_inventory):
        fake_inventory.processes[7100] = ProcessRecord(7100, "", "")
        fake_inventory.alive.add(7100)

        result = await engine.stop(7100)

        assert result.success is False
        assert result.error_kind is FailureKind.SAFETY_REJECTED
        assert result.final_state is TerminationState.REJECTED
        assert "could not be read" in result.error
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pid", [0, -4, 4294967296])
    async def test_invalid_pid(self, engine, fake_runner, pid):
        result = await engine.stop(pid)

        assert result.error_kind is FailureKind.INVALID_PID
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_settle_delay_after_each_command(self, engine, fake_runner, sleep_recorder):
        await engine.stop(REACT_PID)

        assert len(sleep_recorder.delays) == len(fake_runner.calls)

    @pytest.mark.asyncio
    async def test_attempts_written_to_log_store(self, engine, fake_runner, fake_inventory, log_store):
        fake_runner.responses[("kill", "-TERM", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)

        await engine.stop(REACT_PID)

        entries = await log_store.read(REACT_PID)
        assert entries[0].message == f"Process {REACT_PID} terminated using graceful strategy"
        assert all(e.source == "termination_engine" for e in entries)

    @pytest.mark.asyncio
    async def test_failure_logged_as_error(self, engine, log_store):
        await engine.stop(REACT_PID)

        entries = await log_store.read(REACT_PID)
        assert entries[0].level is LogLevel.ERROR
        assert entries[0].context["kind"] == "exhausted"


class TestStopMany:
    """Test batch termination."""

    @pytest.mark.asyncio
    async def test_aggregates_results(self, engine, fake_runner, fake_inventory):
        fake_runner.responses[("kill", "-TERM", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)
        fake_runner.responses[("kill", "-TERM", str(DJANGO_PID))] = killing_response(fake_inventory, DJANGO_PID)

        batch = await engine.stop_many([REACT_PID, DJANGO_PID, 9999])

        assert batch.success is False
        assert batch.total == 3
        assert batch.successful == 2
        assert batch.failed == 1
        assert batch.results[9999].error_kind is FailureKind.NOT_FOUND
        assert list(batch.results) == [REACT_PID, DJANGO_PID, 9999]

    @pytest.mark.asyncio
    async def test_duplicates_stopped_once(self, engine, fake_runner, fake_inventory):
        fake_runner.responses[("kill", "-TERM", str(REACT_PID))] = killing_response(fake_inventory, REACT_PID)

        batch = await engine.stop_many([REACT_PID, REACT_PID])

        assert batch.total == 1
        assert batch.success is True
        assert len(fake_runner.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine):
        batch = await engine.stop_many([])

        assert batch.success is True
        assert batch.total == 0


class TestRestart:
    """Test stop-then-relaunch."""

    @pytest.mark.asyncio
    async def test_restart_success(self, engine, fake_runner, fake_inventory, launcher, sleep_recorder, log_store):
        fake_runner.responses[("kill", "-TERM", str(DJANGO_PID))] = killing_response(fake_inventory, DJANGO_PID)

        result = await engine.restart(DJANGO_PID)

        assert result.success is True
        assert result.old_pid == DJANGO_PID
        assert result.new_pid == 5555
        snapshot = launcher.launch.await_args.args[0]
        assert snapshot.argv == ("python", "manage.py", "runserver", "0.0.0.0:8000")
        assert snapshot.cwd == "/home/dev/project"
        new_entries = await log_store.read(5555)
        assert new_entries[0].context["old_pid"] == DJANGO_PID

    @pytest.mark.asyncio
    async def test_missing_process_fails_fast(self, engine, fake_runner, fake_inventory, launcher):
        fake_inventory.kill(DJANGO_PID)

        result = await engine.restart(DJANGO_PID)

        assert result.success is False
        assert result.error_kind is FailureKind.NOT_FOUND
        assert fake_runner.calls == []
        launcher.launch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_command_line_fails_fast(self, engine, fake_runner, fake_inventory, launcher):
        fake_inventory.snapshot = AsyncMock(return_value=ProcessSnapshot(
            pid=DJANGO_PID, name="", argv=(), command_line="", cwd=None
        ))

        result = await engine.restart(DJANGO_PID)

        assert result.error_kind is FailureKind.RESTART_FAILED
        assert fake_runner.calls == []
        launcher.launch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_failure_prevents_launch(self, engine, launcher):
        result = await engine.restart(SCRIPT_PID)

        assert result.success is False
        assert result.error_kind is FailureKind.EXHAUSTED
        launcher.launch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_launch_failure(self, engine, fake_runner, fake_inventory, launcher):
        fake_runner.responses[("kill", "-TERM", str(DJANGO_PID))] = killing_response(fake_inventory, DJANGO_PID)
        launcher.launch.side_effect = LaunchError("no such file")

        result = await engine.restart(DJANGO_PID)

        assert result.success is False
        assert result.error_kind is FailureKind.LAUNCH_FAILED
        assert result.error == "no such file"

    @pytest.mark.asyncio
    async def test_invalid_pid(self, engine):
        result = await engine.restart(0)

        assert result.error_kind is FailureKind.INVALID_PID


class TestLadders:
    """Test strategy ladder construction."""

    def test_posix_node_ladder(self, termination_config):
        ladder = build_ladder("linux", "node", termination_config)

        assert list(ladder) == list(STAGE_ORDER)
        assert [s.describe(42) for s in ladder[TerminationStage.GRACEFUL]] == ["kill -TERM 42", "kill -INT 42"]
        assert [s.describe(42) for s in ladder[TerminationStage.FORCE]] == ["kill -KILL 42"]
        assert [s.describe(42) for s in ladder[TerminationStage.TOOL_SPECIFIC]] == ["kill -HUP 42", "kill -QUIT 42"]

    def test_posix_tool_specific_targets_single_pid(self):
        for runtime in ("node", "python"):
            for strategy in build_ladder("linux", runtime)[TerminationStage.TOOL_SPECIFIC]:
                assert strategy.render(42)[0] == "kill"
                assert strategy.render(42)[-1] == "42"
                assert "-P" not in strategy.render(42)

    def test_unknown_runtime_has_no_tool_specific_stage(self):
        ladder = build_ladder("darwin", None)

        assert ladder[TerminationStage.TOOL_SPECIFIC] == ()

    def test_windows_ladder(self):
        ladder = build_ladder("win32", "node")

        assert ladder[TerminationStage.GRACEFUL][0].describe(42) == "taskkill /PID 42"
        assert ladder[TerminationStage.FORCE][0].describe(42) == "taskkill /F /PID 42"
        assert ladder[TerminationStage.TOOL_SPECIFIC][0].render(42)[-1] == "PID eq 42"

    def test_settle_delays_from_config(self):
        ladder = build_ladder("linux", "python")

        assert ladder[TerminationStage.GRACEFUL][0].settle_delay == 1.5
        assert ladder[TerminationStage.FORCE][0].settle_delay == 2.0


class TestLauncher:
    """Test the detached process launcher."""

    @pytest.mark.asyncio
    async def test_launch_missing_binary(self, temp_dir):
        snapshot = ProcessSnapshot(
            pid=4242,
            name="missing",
            argv=(str(temp_dir / "does-not-exist"),),
            command_line="does-not-exist",
            cwd=str(temp_dir),
        )

        with pytest.raises(LaunchError):
            await ProcessLauncher("linux").launch(snapshot)
