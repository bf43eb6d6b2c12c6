"""
Pytest configuration and shared fixtures for devserver-manager tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Generator

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from devserver_manager.detection.classifier import ServerClassifier
from devserver_manager.detection.rules import AgentIdentity
from devserver_manager.models import PortBinding, ProcessRecord
from devserver_manager.storage.log_store import LogStore
from devserver_manager.utils.config import (
    AgentConfig,
    DetectionConfig,
    LogStoreConfig,
    TerminationConfig,
)

from mock_helpers import FakeClock, FakeCommandRunner, FakeInventory, SleepRecorder


FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Never matches a PID used by the sample processes below
AGENT_PID = 31337

REACT_PID = 4242
DJANGO_PID = 4300
NGINX_PID = 4500
SCRIPT_PID = 4600


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def sample_output():
    """Read a captured OS tool output from tests/fixtures."""
    def read(name: str) -> str:
        return (FIXTURES_DIR / name).read_text()
    return read


@pytest.fixture
def identity() -> AgentIdentity:
    return AgentIdentity(pid=AGENT_PID, parent_pid=None)


@pytest.fixture
def classifier(identity: AgentIdentity) -> ServerClassifier:
    return ServerClassifier(DetectionConfig(), identity)


@pytest.fixture
def termination_config() -> TerminationConfig:
    """Termination settings with every delay disabled."""
    return TerminationConfig(
        graceful_delay=0,
        force_delay=0,
        tool_specific_delay=0,
        restart_delay=0,
    )


@pytest.fixture
def agent_config(temp_dir: Path, termination_config: TerminationConfig) -> AgentConfig:
    return AgentConfig(
        termination=termination_config,
        log_store=LogStoreConfig(directory=temp_dir / "server-logs"),
    )


@pytest.fixture
def log_store(temp_dir: Path) -> LogStore:
    return LogStore(temp_dir / "server-logs")


@pytest.fixture
def sample_processes():
    return [
        ProcessRecord(REACT_PID, "node", "node /home/dev/shop/node_modules/.bin/react-scripts start", 4000),
        ProcessRecord(DJANGO_PID, "python", "python manage.py runserver 0.0.0.0:8000", 4000),
        ProcessRecord(NGINX_PID, "nginx", "nginx: master process /usr/sbin/nginx -g daemon off;", 1),
        ProcessRecord(SCRIPT_PID, "python3", "python3 /home/dev/scripts/cleanup.py", 4000),
    ]


@pytest.fixture
def sample_bindings():
    return [
        PortBinding(REACT_PID, 3000, "0.0.0.0"),
        PortBinding(DJANGO_PID, 8000, "0.0.0.0"),
        PortBinding(NGINX_PID, 8080, "0.0.0.0"),
    ]


@pytest.fixture
def fake_inventory(sample_processes, sample_bindings) -> FakeInventory:
    return FakeInventory(sample_processes, sample_bindings)


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
