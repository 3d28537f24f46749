"""Document merge policy and line-level three-way merge for conflict resolution."""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from stronghold_sync import types

MERGE_REASON = "automatic_sync"


class ConflictResolutionError(RuntimeError):
    """Raised when a conflict cannot be resolved as requested."""


class StaleConflictError(ConflictResolutionError):
    """Raised when the remote copy moved on after the conflict was detected."""


@dataclass
class MergeResult:
    """Result of a text merge attempt."""

    success: bool
    content: Optional[str] = None
    conflicts: List[str] = field(default_factory=list)


def merge_documents(
    local: types.SyncableDocument,
    remote: types.SyncableDocument,
    *,
    device_id: Optional[str],
    now: float,
) -> types.SyncableDocument:
    """Remote fields as the base, local fields overlaid, metadata shallow-merged.

    Pure: the same pair always yields the same version and content.
    """
    metadata = {
        **remote.metadata,
        **local.metadata,
        "lastMergedAt": _isoformat(now),
        "mergeReason": MERGE_REASON,
    }
    return remote.with_changes(
        kind=local.kind,
        title=local.title,
        content=local.content,
        metadata=metadata,
        version=next_version(local, remote),
        deleted_at=_latest(local.deleted_at, remote.deleted_at),
        **_synced_stamp(local.content, device_id, now),
    )


def promote_local(
    local: types.SyncableDocument,
    remote: Optional[types.SyncableDocument],
    *,
    device_id: Optional[str],
    now: float,
) -> types.SyncableDocument:
    """The local copy as it will be pushed over the remote one."""
    return local.with_changes(
        version=next_version(local, remote),
        **_synced_stamp(local.content, device_id, now),
    )


def adopt_remote(remote: types.SyncableDocument, *, now: float) -> types.SyncableDocument:
    """The remote copy as it will be stored locally.

    ``last_synced_at`` never trails the remote modification time, so a remote
    clock running ahead of ours does not read as a fresh local edit.
    """
    return remote.with_changes(
        last_synced_at=max(now, remote.last_modified),
        last_synced_content=remote.content,
    )


def resolve_conflict(
    conflict: types.SyncConflict,
    resolution: types.ConflictResolution,
    *,
    device_id: Optional[str],
    now: float,
    content: Optional[str] = None,
) -> types.SyncableDocument:
    """Build the document that ends a conflict."""
    local, remote = conflict.local, conflict.remote
    resolution = types.ConflictResolution(resolution)
    if resolution == types.ConflictResolution.LOCAL:
        chosen = local
    elif resolution == types.ConflictResolution.REMOTE:
        chosen = remote
    elif resolution == types.ConflictResolution.MERGE:
        result = merge_three_way(local.last_synced_content or "", local.content, remote.content)
        if not result.success:
            raise ConflictResolutionError(
                f"Document {conflict.document_id} has overlapping edits; resolve it manually."
            )
        chosen = local.with_changes(
            content=result.content,
            metadata={**remote.metadata, **local.metadata},
        )
    else:
        if content is None:
            raise ConflictResolutionError("Manual resolution requires the resolved content.")
        chosen = local.with_changes(content=content)
    return chosen.with_changes(
        version=next_version(local, remote),
        **_synced_stamp(chosen.content, device_id, now),
    )


def next_version(
    local: Optional[types.SyncableDocument],
    remote: Optional[types.SyncableDocument],
) -> int:
    versions = [doc.version for doc in (local, remote) if doc is not None]
    return max(versions, default=0) + 1


def merge_three_way(base: str, current_a: str, current_b: str) -> MergeResult:
    """Merge two edits of ``base`` line by line, in the manner of ``git merge``.

    Non-overlapping hunks from both sides are applied; overlapping hunks fail the
    merge and the content carries conflict markers instead.
    """
    if current_a == current_b:
        return MergeResult(success=True, content=current_a)
    if current_a == base:
        return MergeResult(success=True, content=current_b)
    if current_b == base:
        return MergeResult(success=True, content=current_a)

    base_lines = base.splitlines(keepends=True)
    a_lines = current_a.splitlines(keepends=True)
    b_lines = current_b.splitlines(keepends=True)

    merged = _merge_lines(base_lines, a_lines, b_lines)
    if merged is not None:
        return MergeResult(success=True, content="".join(merged))
    return MergeResult(
        success=False,
        content=_create_conflict_markers(a_lines, b_lines),
        conflicts=["Automatic merge failed - manual resolution required"],
    )


Hunk = Tuple[int, int, Tuple[str, ...]]


def _hunks(base_lines: Sequence[str], other: Sequence[str]) -> List[Hunk]:
    matcher = difflib.SequenceMatcher(None, base_lines, other, autojunk=False)
    return [
        (i1, i2, tuple(other[j1:j2]))
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _overlaps(a: Hunk, b: Hunk) -> bool:
    # Hunks starting at the same base line collide even when one is a pure insertion.
    return a[0] == b[0] or (a[0] < b[1] and b[0] < a[1])


def _merge_lines(
    base_lines: List[str],
    a_lines: List[str],
    b_lines: List[str],
) -> Optional[List[str]]:
    """Return merged lines, or None when the two sides touch the same region."""
    hunks_a = _hunks(base_lines, a_lines)
    hunks_b = [hunk for hunk in _hunks(base_lines, b_lines) if hunk not in hunks_a]
    for hunk_a in hunks_a:
        for hunk_b in hunks_b:
            if _overlaps(hunk_a, hunk_b):
                return None

    result: List[str] = []
    position = 0
    for start, end, replacement in sorted(hunks_a + hunks_b, key=lambda hunk: (hunk[0], hunk[1])):
        result.extend(base_lines[position:start])
        result.extend(replacement)
        position = end
    result.extend(base_lines[position:])
    return result


def _create_conflict_markers(a_lines: List[str], b_lines: List[str]) -> str:
    result = ["<<<<<<< LOCAL\n"]
    result.extend(a_lines)
    if a_lines and not a_lines[-1].endswith("\n"):
        result.append("\n")
    result.append("=======\n")
    result.extend(b_lines)
    if b_lines and not b_lines[-1].endswith("\n"):
        result.append("\n")
    result.append(">>>>>>> REMOTE\n")
    return "".join(result)


def _synced_stamp(content: str, device_id: Optional[str], now: float) -> dict:
    return {
        "last_modified": now,
        "last_synced_at": now,
        "last_synced_content": content,
        "origin_device_id": device_id,
    }


def _latest(first: Optional[float], second: Optional[float]) -> Optional[float]:
    stamps = [stamp for stamp in (first, second) if stamp is not None]
    return max(stamps) if stamps else None


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


__all__ = [
    "ConflictResolutionError",
    "MERGE_REASON",
    "MergeResult",
    "StaleConflictError",
    "adopt_remote",
    "merge_documents",
    "merge_three_way",
    "next_version",
    "promote_local",
    "resolve_conflict",
]
