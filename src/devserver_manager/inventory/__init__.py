"""Process and listening-socket inventory."""

from .runner import CommandRunner, CommandResult
from .provider import InventoryProvider
from .joiner import join, enrich
from .parsers import is_valid_pid, safe_parse_pid

__all__ = [
    'CommandRunner',
    'CommandResult',
    'InventoryProvider',
    'join',
    'enrich',
    'is_valid_pid',
    'safe_parse_pid',
]
