"""Top-level managers exposing the agent's operations."""

from .server_manager import ServerManager, ManagerState

__all__ = ['ServerManager', 'ManagerState']
