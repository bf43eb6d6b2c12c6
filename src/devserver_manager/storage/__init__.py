"""Persistent storage for per-process diagnostics."""

from .log_store import LogStore, parse_log_line

__all__ = ['LogStore', 'parse_log_line']
