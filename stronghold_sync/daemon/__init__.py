"""Foreground daemon that keeps the local cache in sync on a schedule."""

from .runner import DaemonRunner

__all__ = ["DaemonRunner"]
