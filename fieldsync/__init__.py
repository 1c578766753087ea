"""Offline-first field data synchronization."""

__version__ = "0.1.0"
