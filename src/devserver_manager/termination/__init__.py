"""Staged termination, restart and batch stop."""

from .engine import TerminationEngine
from .launcher import ProcessLauncher
from .strategies import STAGE_ORDER, Strategy, build_ladder

__all__ = [
    'TerminationEngine',
    'ProcessLauncher',
    'STAGE_ORDER',
    'Strategy',
    'build_ladder',
]
