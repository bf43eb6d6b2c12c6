"""
Termination strategy ladders.

A ladder maps each stage to an ordered tuple of commands. Commands target a
single PID; process-tree kills are not part of the graceful or force stages.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..detection.rules import RUNTIME_NODE, RUNTIME_PYTHON
from ..models import TerminationStage
from ..utils.config import TerminationConfig

STAGE_ORDER: Tuple[TerminationStage, ...] = (
    TerminationStage.GRACEFUL,
    TerminationStage.FORCE,
    TerminationStage.TOOL_SPECIFIC,
)


@dataclass(frozen=True)
class Strategy:
    """One command in a stage, followed by a settle delay before re-polling."""
    stage: TerminationStage
    argv: Tuple[str, ...]
    settle_delay: float = 0.0

    def render(self, pid: int) -> List[str]:
        return [part.format(pid=pid) for part in self.argv]

    def describe(self, pid: int) -> str:
        return " ".join(self.render(pid))


Ladder = Dict[TerminationStage, Tuple[Strategy, ...]]

_POSIX = {
    TerminationStage.GRACEFUL: (
        ("kill", "-TERM", "{pid}"),
        ("kill", "-INT", "{pid}"),
    ),
    TerminationStage.FORCE: (
        ("kill", "-KILL", "{pid}"),
    ),
}

# Signals the runtime terminates on even when its SIGTERM/SIGINT handlers
# keep it alive. Each call targets the single PID.
_POSIX_TOOL_SPECIFIC = {
    RUNTIME_NODE: (
        ("kill", "-HUP", "{pid}"),
        ("kill", "-QUIT", "{pid}"),
    ),
    RUNTIME_PYTHON: (
        ("kill", "-QUIT", "{pid}"),
    ),
}

_WINDOWS = {
    TerminationStage.GRACEFUL: (
        ("taskkill", "/PID", "{pid}"),
    ),
    TerminationStage.FORCE: (
        ("taskkill", "/F", "/PID", "{pid}"),
        ("powershell", "-NoProfile", "-Command", "Stop-Process -Id {pid} -Force"),
    ),
}

_WINDOWS_TOOL_SPECIFIC = {
    RUNTIME_NODE: (
        ("taskkill", "/F", "/IM", "node.exe", "/FI", "PID eq {pid}"),
        ("wmic", "process", "where", "processid={pid}", "delete"),
    ),
    RUNTIME_PYTHON: (
        ("wmic", "process", "where", "processid={pid}", "delete"),
    ),
}


def build_ladder(
    platform: str,
    runtime: Optional[str],
    config: Optional[TerminationConfig] = None
) -> Ladder:
    """
    Build the strategy ladder for a platform and runtime family.

    Args:
        platform: sys.platform style identifier
        runtime: Runtime family of the target, or None when unrecognized
        config: Supplies the settle delay of each stage

    Returns:
        Strategies per stage; the tool-specific stage is empty for
        unrecognized runtimes
    """
    config = config or TerminationConfig()
    windows = platform.startswith("win")
    base = _WINDOWS if windows else _POSIX
    tool_specific = _WINDOWS_TOOL_SPECIFIC if windows else _POSIX_TOOL_SPECIFIC
    delays = {
        TerminationStage.GRACEFUL: config.graceful_delay,
        TerminationStage.FORCE: config.force_delay,
        TerminationStage.TOOL_SPECIFIC: config.tool_specific_delay,
    }

    commands = {
        TerminationStage.GRACEFUL: base[TerminationStage.GRACEFUL],
        TerminationStage.FORCE: base[TerminationStage.FORCE],
        TerminationStage.TOOL_SPECIFIC: tool_specific.get(runtime, ()),
    }
    return {
        stage: tuple(Strategy(stage, argv, delays[stage]) for argv in commands[stage])
        for stage in STAGE_ORDER
    }
