"""Offline-first document synchronization and query caching."""

__version__ = "0.1.0"

__all__ = ["__version__"]
