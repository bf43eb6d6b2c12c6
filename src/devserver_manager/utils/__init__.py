"""Utility modules for devserver-manager."""
