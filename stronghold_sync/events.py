"""Typed publish/subscribe channel used by the sync engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from stronghold_sync import types

logger = logging.getLogger(__name__)


class SyncEvent(str, Enum):
    INITIALIZED = "initialized"
    DOCUMENT_SYNCED = "documentSynced"
    CONFLICT_DETECTED = "conflictDetected"
    CONFLICT_RESOLVED = "conflictResolved"
    ONLINE = "online"
    OFFLINE = "offline"
    SYNC_COMPLETED = "syncCompleted"
    SYNC_FAILED = "syncFailed"
    OFFLINE_MODE_ENABLED = "offlineModeEnabled"


@dataclass(frozen=True)
class Initialized:
    device_id: str
    owner_id: str


@dataclass(frozen=True)
class DocumentSynced:
    document_id: str
    action: types.SyncAction
    document: types.SyncableDocument


@dataclass(frozen=True)
class ConflictDetected:
    conflict: types.SyncConflict


@dataclass(frozen=True)
class ConflictResolved:
    document_id: str
    resolution: types.ConflictResolution
    document: types.SyncableDocument


@dataclass(frozen=True)
class NetworkChanged:
    is_online: bool


@dataclass(frozen=True)
class SyncCompleted:
    summary: types.SyncSummary


@dataclass(frozen=True)
class SyncFailed:
    owner_id: str
    error: BaseException
    document_id: Optional[str] = None


@dataclass(frozen=True)
class OfflineModeEnabled:
    cached_at: float
    datasets: Dict[str, int] = field(default_factory=dict)


PAYLOAD_TYPES: Dict[SyncEvent, type] = {
    SyncEvent.INITIALIZED: Initialized,
    SyncEvent.DOCUMENT_SYNCED: DocumentSynced,
    SyncEvent.CONFLICT_DETECTED: ConflictDetected,
    SyncEvent.CONFLICT_RESOLVED: ConflictResolved,
    SyncEvent.ONLINE: NetworkChanged,
    SyncEvent.OFFLINE: NetworkChanged,
    SyncEvent.SYNC_COMPLETED: SyncCompleted,
    SyncEvent.SYNC_FAILED: SyncFailed,
    SyncEvent.OFFLINE_MODE_ENABLED: OfflineModeEnabled,
}

Handler = Callable[[Any], None]


class EventBus:
    """One handler list per event kind, delivered synchronously in registration order."""

    def __init__(self) -> None:
        self._handlers: Dict[SyncEvent, List[Handler]] = {}

    def on(self, event: SyncEvent | str, handler: Handler) -> None:
        kind = SyncEvent(event)
        self._handlers.setdefault(kind, []).append(handler)

    def off(self, event: SyncEvent | str, handler: Handler) -> None:
        kind = SyncEvent(event)
        handlers = self._handlers.get(kind)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    def emit(self, event: SyncEvent, payload: Any) -> int:
        """Deliver ``payload``; returns how many handlers ran without raising."""
        expected = PAYLOAD_TYPES[event]
        if not isinstance(payload, expected):
            raise TypeError(f"{event.value} expects {expected.__name__}, got {type(payload).__name__}.")
        delivered = 0
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler %r for %s raised; continuing.", handler, event.value)
                continue
            delivered += 1
        return delivered

    def handler_count(self, event: SyncEvent | str) -> int:
        return len(self._handlers.get(SyncEvent(event), ()))

    def clear(self) -> None:
        self._handlers.clear()


__all__ = [
    "ConflictDetected",
    "ConflictResolved",
    "DocumentSynced",
    "EventBus",
    "Handler",
    "Initialized",
    "NetworkChanged",
    "OfflineModeEnabled",
    "PAYLOAD_TYPES",
    "SyncCompleted",
    "SyncEvent",
    "SyncFailed",
]
