"""Engine package exposing the document sync components."""

from . import devices, local_store, merge, network, offline, planner, remote, state_store, sync_engine
from .sync_engine import SyncEngine, SyncError

__all__ = [
    "SyncEngine",
    "SyncError",
    "devices",
    "local_store",
    "merge",
    "network",
    "offline",
    "planner",
    "remote",
    "state_store",
    "sync_engine",
]
