"""
Tests for the inventory provider and command runner.
"""

import os
import sys

import pytest

from devserver_manager.inventory.provider import (
    LSOF_COMMAND,
    NETSTAT_COMMAND,
    POWERSHELL_COMMAND,
    PS_COMMAND,
    InventoryProvider,
)
from devserver_manager.inventory.runner import CommandResult, CommandRunner
from devserver_manager.models import PortBinding
from devserver_manager.utils.errors import CommandError, CommandTimeoutError

from mock_helpers import FakeCommandRunner


class TestProviderListing:
    """Test process and socket listing with canned command output."""

    @pytest.mark.asyncio
    async def test_list_processes_posix(self, sample_output):
        runner = FakeCommandRunner({PS_COMMAND: sample_output("ps_linux.txt")})
        provider = InventoryProvider(runner=runner, platform="linux")

        records = await provider.list_processes()

        assert len(records) == 6
        assert runner.calls == [PS_COMMAND]

    @pytest.mark.asyncio
    async def test_list_processes_windows(self, sample_output):
        runner = FakeCommandRunner({POWERSHELL_COMMAND: sample_output("powershell_windows.csv")})
        provider = InventoryProvider(runner=runner, platform="win32")

        records = await provider.list_processes()

        assert {r.pid for r in records} == {4, 4242, 4300, 5000}

    @pytest.mark.asyncio
    async def test_list_ports_darwin_uses_lsof(self, sample_output):
        runner = FakeCommandRunner({LSOF_COMMAND: sample_output("lsof_darwin.txt")})
        provider = InventoryProvider(runner=runner, platform="darwin")

        bindings = await provider.list_listening_ports()

        assert runner.calls == [LSOF_COMMAND]
        assert {b.port for b in bindings} == {3000, 8000}

    @pytest.mark.asyncio
    async def test_list_ports_windows_uses_netstat(self, sample_output):
        runner = FakeCommandRunner({NETSTAT_COMMAND: sample_output("netstat_windows.txt")})
        provider = InventoryProvider(runner=runner, platform="win32")

        bindings = await provider.list_listening_ports()

        assert runner.calls == [NETSTAT_COMMAND]
        assert len(bindings) == 4

    @pytest.mark.asyncio
    async def test_lsof_no_matches_is_not_an_error(self):
        runner = FakeCommandRunner({"lsof": CommandResult(argv=LSOF_COMMAND, returncode=1)})
        provider = InventoryProvider(runner=runner, platform="darwin")

        assert await provider.list_listening_ports() == []

    @pytest.mark.asyncio
    async def test_failed_command_returns_empty(self):
        runner = FakeCommandRunner({
            "ps": CommandResult(argv=PS_COMMAND, returncode=1, stderr="ps: permission denied"),
        })
        provider = InventoryProvider(runner=runner, platform="linux")

        assert await provider.list_processes() == []

    @pytest.mark.asyncio
    async def test_missing_tool_returns_empty(self):
        runner = FakeCommandRunner({"lsof": CommandError("Cannot execute lsof")})
        provider = InventoryProvider(runner=runner, platform="darwin")

        assert await provider.list_listening_ports() == []

    @pytest.mark.asyncio
    async def test_ports_helpers(self, sample_output):
        runner = FakeCommandRunner({LSOF_COMMAND: sample_output("lsof_darwin.txt")})
        provider = InventoryProvider(runner=runner, platform="darwin")

        assert await provider.is_port_in_use(3000)
        assert not await provider.is_port_in_use(3001)

    def test_port_distribution(self):
        bindings = [
            PortBinding(1, 80, "*"),
            PortBinding(2, 3000, "*"),
            PortBinding(3, 8000, "*"),
            PortBinding(4, 60000, "*"),
        ]

        distribution = InventoryProvider.get_port_distribution(bindings)

        assert distribution == {
            "system (0-1023)": 1,
            "development (1024-9999)": 2,
            "ephemeral (49152-65535)": 1,
        }


class TestProviderPerPid:
    """Test psutil-backed per-PID queries against the test process itself."""

    @pytest.mark.asyncio
    async def test_process_exists(self):
        provider = InventoryProvider(runner=FakeCommandRunner())

        assert await provider.process_exists(os.getpid())
        assert not await provider.process_exists(0)

    @pytest.mark.asyncio
    async def test_process_details(self):
        provider = InventoryProvider(runner=FakeCommandRunner())

        record = await provider.get_process_details(os.getpid())

        assert record.pid == os.getpid()
        assert record.name
        assert record.parent_pid == os.getppid()

    @pytest.mark.asyncio
    async def test_invalid_pid_details(self):
        provider = InventoryProvider(runner=FakeCommandRunner())

        assert await provider.get_process_details(-1) is None
        assert await provider.snapshot(0) is None

    @pytest.mark.asyncio
    async def test_snapshot(self):
        provider = InventoryProvider(runner=FakeCommandRunner())

        snapshot = await provider.snapshot(os.getpid())

        assert snapshot.argv
        assert snapshot.cwd == os.getcwd()

    @pytest.mark.asyncio
    async def test_process_tree(self):
        provider = InventoryProvider(runner=FakeCommandRunner())

        tree = await provider.get_process_tree(os.getpid())

        assert tree.pid == os.getpid()
        assert tree.parent_pid == os.getppid()
        assert isinstance(tree.children, tuple)


class TestCommandRunner:
    """Test running real subprocesses."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        result = await CommandRunner().run([sys.executable, "-c", "print('hello')"])

        assert result.ok
        assert result.stdout.strip() == "hello"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        result = await CommandRunner().run([sys.executable, "-c", "import sys; sys.exit(3)"])

        assert not result.ok
        assert result.returncode == 3

    @pytest.mark.asyncio
    async def test_missing_program(self):
        with pytest.raises(CommandError):
            await CommandRunner().run(["definitely-not-a-real-program-xyz"])

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(CommandTimeoutError):
            await CommandRunner().run(
                [sys.executable, "-c", "import time; time.sleep(5)"],
                timeout=0.2,
            )
