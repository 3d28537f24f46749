"""Engine state kept in the local store: cached documents, conflict log, sync markers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from stronghold_sync import types
from stronghold_sync.engine.local_store import LocalStore, LocalStoreError

logger = logging.getLogger(__name__)

STATE_VERSION = 2

DOCUMENTS_KEY = "offline_documents"
CONFLICTS_KEY = "conflicts"
DEVICE_ID_KEY = "device_id"
DEVICE_RECORD_KEY = "device"
LAST_SYNC_KEY = "last_sync"
OFFLINE_CACHE_KEY = "offline_cache"


class StateStoreError(LocalStoreError):
    """Raised when persisted engine state has an unexpected shape."""


class DocumentCache:
    """Local copies of documents, keyed by document id."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def get(self, document_id: str) -> Optional[types.SyncableDocument]:
        return self._load().get(document_id)

    def put(self, document: types.SyncableDocument) -> None:
        documents = self._load()
        documents[document.id] = document
        self._save(documents)

    def remove(self, document_id: str) -> bool:
        documents = self._load()
        if documents.pop(document_id, None) is None:
            return False
        self._save(documents)
        return True

    def all(self, owner_id: Optional[str] = None) -> List[types.SyncableDocument]:
        documents = list(self._load().values())
        if owner_id is not None:
            documents = [doc for doc in documents if doc.owner_id == owner_id]
        return documents

    def pending_count(self, owner_id: Optional[str] = None) -> int:
        """Documents never reconciled with the remote store."""
        return sum(1 for doc in self.all(owner_id) if doc.is_pending)

    def modified_count(self, owner_id: Optional[str] = None) -> int:
        """Previously synced documents edited locally since."""
        return sum(1 for doc in self.all(owner_id) if not doc.is_pending and doc.has_local_changes())

    def _load(self) -> Dict[str, types.SyncableDocument]:
        payload = self._store.get(DOCUMENTS_KEY)
        if payload is None:
            return {}
        entries = _unwrap(payload, DOCUMENTS_KEY)
        if not isinstance(entries, list):
            raise StateStoreError(f"'{DOCUMENTS_KEY}' must hold a list of documents.")
        documents: Dict[str, types.SyncableDocument] = {}
        for entry in entries:
            if not isinstance(entry, dict) or "id" not in entry:
                logger.warning("Skipping malformed cached document entry.")
                continue
            document = types.SyncableDocument.from_dict(entry)
            documents[document.id] = document
        return documents

    def _save(self, documents: Dict[str, types.SyncableDocument]) -> None:
        self._store.set(DOCUMENTS_KEY, _wrap([doc.to_dict() for doc in documents.values()]))


class ConflictLog:
    """Open conflicts; at most one entry per document."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def all(self) -> List[types.SyncConflict]:
        payload = self._store.get(CONFLICTS_KEY)
        if payload is None:
            return []
        entries = _unwrap(payload, CONFLICTS_KEY)
        if not isinstance(entries, list):
            raise StateStoreError(f"'{CONFLICTS_KEY}' must hold a list of conflicts.")
        conflicts: List[types.SyncConflict] = []
        for entry in entries:
            if not isinstance(entry, dict) or "document_id" not in entry:
                logger.warning("Skipping malformed conflict log entry.")
                continue
            conflicts.append(types.SyncConflict.from_dict(entry))
        return conflicts

    def get(self, document_id: str) -> Optional[types.SyncConflict]:
        for conflict in self.all():
            if conflict.document_id == document_id:
                return conflict
        return None

    def record(self, conflict: types.SyncConflict) -> bool:
        """Store ``conflict``; returns False when the same pair is already logged."""
        conflicts = self.all()
        for index, existing in enumerate(conflicts):
            if existing.document_id != conflict.document_id:
                continue
            if _same_pair(existing, conflict):
                return False
            conflicts[index] = conflict
            self._save(conflicts)
            return True
        conflicts.append(conflict)
        self._save(conflicts)
        return True

    def remove(self, document_id: str) -> bool:
        conflicts = self.all()
        remaining = [conflict for conflict in conflicts if conflict.document_id != document_id]
        if len(remaining) == len(conflicts):
            return False
        self._save(remaining)
        return True

    def _save(self, conflicts: List[types.SyncConflict]) -> None:
        self._store.set(CONFLICTS_KEY, _wrap([conflict.to_dict() for conflict in conflicts]))


def get_last_sync(store: LocalStore) -> Optional[float]:
    value = store.get(LAST_SYNC_KEY)
    return float(value) if value is not None else None


def set_last_sync(store: LocalStore, timestamp: float) -> None:
    store.set(LAST_SYNC_KEY, timestamp)


def _same_pair(a: types.SyncConflict, b: types.SyncConflict) -> bool:
    return (
        a.local.version == b.local.version
        and a.local.content == b.local.content
        and a.local.metadata == b.local.metadata
        and a.local.title == b.local.title
        and a.local.deleted_at == b.local.deleted_at
        and a.remote.version == b.remote.version
        and a.remote.content == b.remote.content
        and a.remote.metadata == b.remote.metadata
    )


def _wrap(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"version": STATE_VERSION, "items": items}


def _unwrap(payload: Any, key: str) -> Any:
    # Version 1 payloads were bare lists.
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        raise StateStoreError(f"'{key}' has an unexpected shape.")
    version = payload.get("version", 1)
    if version not in {1, STATE_VERSION}:
        raise StateStoreError(f"Unsupported state version {version!r} for '{key}'.")
    return payload.get("items", [])


__all__ = [
    "CONFLICTS_KEY",
    "ConflictLog",
    "DEVICE_ID_KEY",
    "DEVICE_RECORD_KEY",
    "DOCUMENTS_KEY",
    "DocumentCache",
    "LAST_SYNC_KEY",
    "OFFLINE_CACHE_KEY",
    "StateStoreError",
    "get_last_sync",
    "set_last_sync",
]
