"""Planner: compare the local and remote copies of a document and decide what to do."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from stronghold_sync import types

# Bookkeeping keys written by reconciliation itself; they never count as an edit.
BOOKKEEPING_METADATA_KEYS = frozenset({"lastMergedAt", "mergeReason"})


@dataclass(frozen=True)
class SyncPlan:
    action: types.SyncAction
    reason: str
    conflict_kind: Optional[types.ConflictKind] = None


def plan(
    local: Optional[types.SyncableDocument],
    remote: Optional[types.SyncableDocument],
) -> SyncPlan:
    """Classify one document.

    A conflict needs both sides to have moved since the last successful sync:
    the local copy was edited, and the remote copy carries a newer version or a
    modification time after ``local.last_synced_at``.
    """
    if local is None and remote is None:
        return SyncPlan(types.SyncAction.NOOP, "missing_everywhere")
    if local is None:
        return SyncPlan(types.SyncAction.PULL, "new_on_remote")
    if remote is None:
        return SyncPlan(types.SyncAction.PUSH, "missing_on_remote")
    if local.last_synced_at is None:
        return SyncPlan(types.SyncAction.MERGE, "first_sync")

    changed_local = local.has_local_changes()
    changed_remote = remote_changed_since_sync(local, remote)
    if changed_local and changed_remote:
        kind = conflict_kind(local, remote)
        if kind is None:
            return SyncPlan(types.SyncAction.MERGE, "converged")
        return SyncPlan(types.SyncAction.CONFLICT, "both_modified", conflict_kind=kind)
    if changed_local:
        return SyncPlan(types.SyncAction.PUSH, "modified_locally")
    if changed_remote:
        return SyncPlan(types.SyncAction.PULL, "modified_remotely")
    return SyncPlan(types.SyncAction.NOOP, "unchanged")


def remote_changed_since_sync(local: types.SyncableDocument, remote: types.SyncableDocument) -> bool:
    if local.last_synced_at is None:
        return True
    if remote.version > local.version:
        return True
    return remote.last_modified > local.last_synced_at


def conflict_kind(
    local: types.SyncableDocument,
    remote: types.SyncableDocument,
) -> Optional[types.ConflictKind]:
    """Which parts diverge; None when both sides hold the same document."""
    content_differs = local.content != remote.content or local.is_deleted != remote.is_deleted
    metadata_differs = local.title != remote.title or user_metadata(local.metadata) != user_metadata(
        remote.metadata
    )
    if content_differs and metadata_differs:
        return types.ConflictKind.BOTH
    if content_differs:
        return types.ConflictKind.CONTENT
    if metadata_differs:
        return types.ConflictKind.METADATA
    return None


def user_metadata(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in metadata.items() if key not in BOOKKEEPING_METADATA_KEYS}


__all__ = [
    "BOOKKEEPING_METADATA_KEYS",
    "SyncPlan",
    "conflict_kind",
    "plan",
    "remote_changed_since_sync",
    "user_metadata",
]
