"""
devserver-manager - find and stop local development servers.

This package provides a local agent that:
- Joins the OS process table with listening TCP sockets
- Classifies development servers while excluding system and production processes
- Terminates or restarts servers through a staged strategy ladder
- Keeps a per-process diagnostic log
"""

__version__ = "0.1.0"
__author__ = "devserver-manager contributors"

__all__ = [
    '__version__',
]
