"""Core synchronization data types."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class DocumentKind(str, Enum):
    WILL = "will"
    DRAFT = "draft"
    TEMPLATE = "template"


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class ConflictKind(str, Enum):
    CONTENT = "content"
    METADATA = "metadata"
    BOTH = "both"


class ConflictResolution(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"
    MANUAL = "manual"


class SyncAction(str, Enum):
    """Outcome of reconciling a single document."""

    NOOP = "noop"
    PUSH = "push"
    PULL = "pull"
    MERGE = "merge"
    CONFLICT = "conflict"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class SyncableDocument:
    """A document as held by one device, plus its reconciliation bookkeeping."""

    id: str
    owner_id: str
    kind: DocumentKind
    title: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    last_modified: float = 0.0
    last_synced_at: Optional[float] = None
    last_synced_content: Optional[str] = None
    origin_device_id: Optional[str] = None
    deleted_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Documents must have an id.")
        object.__setattr__(self, "kind", DocumentKind(self.kind))
        if self.version < 0:
            raise ValueError(f"Document {self.id} has a negative version.")

    @property
    def is_pending(self) -> bool:
        """True when the document has never been reconciled."""
        return self.last_synced_at is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def has_local_changes(self) -> bool:
        if self.last_synced_at is None:
            return True
        if self.content != self.last_synced_content:
            return True
        return self.last_modified > self.last_synced_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "title": self.title,
            "content": self.content,
            "metadata": copy.deepcopy(self.metadata),
            "version": self.version,
            "last_modified": self.last_modified,
            "last_synced_at": self.last_synced_at,
            "last_synced_content": self.last_synced_content,
            "origin_device_id": self.origin_device_id,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncableDocument":
        return cls(
            id=str(payload["id"]),
            owner_id=str(payload.get("owner_id", "")),
            kind=payload.get("kind", DocumentKind.WILL.value),
            title=str(payload.get("title", "")),
            content=str(payload.get("content", "")),
            metadata=dict(payload.get("metadata") or {}),
            version=int(payload.get("version", 1)),
            last_modified=float(payload.get("last_modified", 0.0)),
            last_synced_at=_optional_float(payload.get("last_synced_at")),
            last_synced_content=payload.get("last_synced_content"),
            origin_device_id=payload.get("origin_device_id"),
            deleted_at=_optional_float(payload.get("deleted_at")),
        )

    def to_remote_record(self) -> Dict[str, Any]:
        """Shape written to the remote document store."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "title": self.title,
            "content": self.content,
            "metadata": copy.deepcopy(self.metadata),
            "version": self.version,
            "updated_at": self.last_modified,
            "device_id": self.origin_device_id,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_remote_record(cls, record: Mapping[str, Any]) -> "SyncableDocument":
        """Build a document from a remote row; remote rows carry no sync bookkeeping."""
        metadata = dict(record.get("metadata") or {})
        return cls(
            id=str(record["id"]),
            owner_id=str(record.get("owner_id", "")),
            kind=record.get("kind") or DocumentKind.WILL.value,
            title=str(record.get("title", "")),
            content=str(record.get("content") or ""),
            metadata=metadata,
            version=int(record.get("version") or 1),
            last_modified=float(record.get("updated_at") or 0.0),
            origin_device_id=record.get("device_id"),
            deleted_at=_optional_float(record.get("deleted_at")),
        )

    def with_changes(self, **changes: Any) -> "SyncableDocument":
        return replace(self, **changes)


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    owner_id: str
    display_name: str
    device_class: DeviceClass
    platform: str
    last_seen: float
    is_online: bool = True
    sync_enabled: bool = True
    registered_at: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "device_class", DeviceClass(self.device_class))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "owner_id": self.owner_id,
            "display_name": self.display_name,
            "device_class": self.device_class.value,
            "platform": self.platform,
            "last_seen": self.last_seen,
            "is_online": self.is_online,
            "sync_enabled": self.sync_enabled,
            "registered_at": self.registered_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DeviceRecord":
        return cls(
            device_id=str(payload["device_id"]),
            owner_id=str(payload.get("owner_id", "")),
            display_name=str(payload.get("display_name", "")),
            device_class=payload.get("device_class", DeviceClass.DESKTOP.value),
            platform=str(payload.get("platform", "")),
            last_seen=float(payload.get("last_seen", 0.0)),
            is_online=bool(payload.get("is_online", True)),
            sync_enabled=bool(payload.get("sync_enabled", True)),
            registered_at=_optional_float(payload.get("registered_at")),
        )


@dataclass(frozen=True)
class SyncConflict:
    """Concurrent divergent edits of one document awaiting explicit resolution."""

    document_id: str
    local: SyncableDocument
    remote: SyncableDocument
    conflict_kind: ConflictKind
    detected_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
            "conflict_kind": self.conflict_kind.value,
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncConflict":
        return cls(
            document_id=str(payload["document_id"]),
            local=SyncableDocument.from_dict(payload["local"]),
            remote=SyncableDocument.from_dict(payload["remote"]),
            conflict_kind=ConflictKind(payload.get("conflict_kind", ConflictKind.CONTENT.value)),
            detected_at=float(payload.get("detected_at", 0.0)),
        )


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    last_sync_time: Optional[float]
    pending_changes: int
    sync_in_progress: bool
    conflicts: List[SyncConflict] = field(default_factory=list)
    modified_changes: int = 0


@dataclass
class SyncSummary:
    """Result of one full-sync pass for an owner."""

    owner_id: str
    documents_count: int = 0
    synced: int = 0
    failed: int = 0
    conflicted: int = 0
    skipped: bool = False


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


__all__ = [
    "ConflictKind",
    "ConflictResolution",
    "DeviceClass",
    "DeviceRecord",
    "DocumentKind",
    "SyncAction",
    "SyncConflict",
    "SyncStatus",
    "SyncSummary",
    "SyncableDocument",
]
