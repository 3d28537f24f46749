"""Reconcile the device-local document cache with the remote document store."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from stronghold_sync import events, types
from stronghold_sync.engine import merge, planner, state_store
from stronghold_sync.engine.devices import DeviceInfoProvider, generate_device_id
from stronghold_sync.engine.local_store import LocalStore
from stronghold_sync.engine.network import NetworkMonitor, Unsubscribe
from stronghold_sync.engine.offline import (
    AssetWorker,
    LoggingAssetWorker,
    ReferenceDataProvider,
    StaticReferenceData,
)
from stronghold_sync.engine.remote import RemoteDocumentStore

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 30.0

Clock = Callable[[], float]


class SyncError(RuntimeError):
    """Raised when a sync request cannot be carried out."""


class SyncEngine:
    """Offline-first document synchronization for one device.

    Conflicting edits are never written in either direction; they are logged and
    wait for :meth:`resolve_conflict`.
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote: RemoteDocumentStore,
        *,
        network: NetworkMonitor,
        device_info: DeviceInfoProvider,
        reference_data: Optional[ReferenceDataProvider] = None,
        asset_worker: Optional[AssetWorker] = None,
        clock: Clock = time.time,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
    ) -> None:
        if sync_interval <= 0:
            raise ValueError("sync_interval must be positive.")
        self._store = local_store
        self._remote = remote
        self._network = network
        self._device_info = device_info
        self._reference_data = reference_data or StaticReferenceData()
        self._asset_worker = asset_worker or LoggingAssetWorker()
        self._clock = clock
        self._sync_interval = sync_interval

        self._documents = state_store.DocumentCache(local_store)
        self._conflicts = state_store.ConflictLog(local_store)
        self._events = events.EventBus()

        self._owner_id: Optional[str] = None
        self._initialized = False
        self._generation = 0
        self._timer: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._background: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Set[str] = set()

    # ------------------------------------------------------------------ lifecycle

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    @property
    def device_id(self) -> str:
        return self._ensure_device_id()

    async def initialize(self, owner_id: str) -> str:
        """Register this device for ``owner_id`` and start periodic sync.

        Calling it again for the same owner is a no-op. Returns the device id.
        """
        if not owner_id:
            raise SyncError("An owner id is required to initialize sync.")
        if self._initialized:
            if owner_id == self._owner_id:
                return self.device_id
            raise SyncError(
                f"Sync is already initialized for {self._owner_id}; call cleanup() before switching owners."
            )

        device_id = self._ensure_device_id()
        await self._register_device(owner_id, device_id)

        self._owner_id = owner_id
        self._initialized = True
        generation = self._generation
        self._unsubscribe = self._network.subscribe(self._on_network_change)
        self._timer = asyncio.create_task(self._run_periodic_sync(owner_id, generation))
        self._spawn(self._register_assets())

        logger.info("Sync initialized for %s on device %s.", owner_id, device_id)
        self._events.emit(events.SyncEvent.INITIALIZED, events.Initialized(device_id=device_id, owner_id=owner_id))
        return device_id

    async def cleanup(self) -> None:
        """Stop the timer and background tasks, drop listeners, forget the owner. Safe to repeat."""
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        background = [task for task in self._background if task is not asyncio.current_task()]
        self._background.clear()
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._events.clear()
        if self._initialized:
            logger.info("Sync stopped for %s.", self._owner_id)
        self._owner_id = None
        self._initialized = False

    # ------------------------------------------------------------------ events

    def on(self, event: events.SyncEvent | str, handler: events.Handler) -> None:
        self._events.on(event, handler)

    def off(self, event: events.SyncEvent | str, handler: events.Handler) -> None:
        self._events.off(event, handler)

    # ------------------------------------------------------------------ local edits

    def get_document(self, document_id: str) -> Optional[types.SyncableDocument]:
        return self._documents.get(document_id)

    def list_documents(self, owner_id: Optional[str] = None) -> List[types.SyncableDocument]:
        return sorted(self._documents.all(owner_id), key=lambda doc: doc.id)

    def save_local(self, document: types.SyncableDocument) -> types.SyncableDocument:
        """Store a locally authored version, stamped with this device and the current time."""
        stamped = document.with_changes(last_modified=self._clock(), origin_device_id=self.device_id)
        self._documents.put(stamped)
        logger.debug("Saved local copy of %s.", stamped.id)
        return stamped

    def edit_document(
        self,
        document_id: str,
        owner_id: str,
        *,
        content: Optional[str] = None,
        title: Optional[str] = None,
        kind: Optional[types.DocumentKind | str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> types.SyncableDocument:
        """Create or update a local document; untouched fields keep their values."""
        existing = self._documents.get(document_id)
        if existing is None:
            document = types.SyncableDocument(
                id=document_id,
                owner_id=owner_id,
                kind=kind or types.DocumentKind.WILL,
                title=title or "",
                content=content or "",
                metadata=dict(metadata or {}),
            )
            return self.save_local(document)
        _check_owner(existing, owner_id)
        changes: Dict[str, Any] = {}
        if content is not None:
            changes["content"] = content
        if title is not None:
            changes["title"] = title
        if kind is not None:
            changes["kind"] = types.DocumentKind(kind)
        if metadata is not None:
            changes["metadata"] = {**existing.metadata, **metadata}
        return self.save_local(existing.with_changes(**changes))

    def delete_document(self, document_id: str, owner_id: str) -> types.SyncableDocument:
        """Tombstone a document; the deletion syncs like any other edit."""
        existing = self._documents.get(document_id)
        if existing is None:
            raise SyncError(f"Document {document_id} is not in the local cache.")
        _check_owner(existing, owner_id)
        return self.save_local(existing.with_changes(deleted_at=self._clock()))

    # ------------------------------------------------------------------ reconciliation

    async def sync_document(self, document_id: str, owner_id: str) -> types.SyncAction:
        """Reconcile one document and return what was done.

        The remote store is written before the local cache; a failed remote write
        leaves the local copy untouched and propagates.
        """
        generation = self._generation
        async with self._lock_for(document_id):
            local = self._documents.get(document_id)
            if local is not None:
                _check_owner(local, owner_id)
            record = await self._remote.fetch_document(document_id, owner_id)
            remote = types.SyncableDocument.from_remote_record(record) if record is not None else None

            if generation != self._generation:
                logger.debug("Discarding result for %s fetched before cleanup.", document_id)
                return types.SyncAction.DISCARDED

            decision = planner.plan(local, remote)
            logger.debug("Plan for %s: %s (%s).", document_id, decision.action.value, decision.reason)
            if decision.action == types.SyncAction.NOOP:
                return decision.action
            if decision.action == types.SyncAction.CONFLICT:
                assert local is not None and remote is not None and decision.conflict_kind is not None
                self._record_conflict(local, remote, decision.conflict_kind)
                return decision.action

            now = self._clock()
            if decision.action == types.SyncAction.PULL:
                assert remote is not None
                result = merge.adopt_remote(remote, now=now)
            elif decision.action == types.SyncAction.PUSH:
                assert local is not None
                result = merge.promote_local(local, remote, device_id=self.device_id, now=now)
                await self._remote.upsert_document(result.to_remote_record())
            else:
                assert local is not None and remote is not None
                result = merge.merge_documents(local, remote, device_id=self.device_id, now=now)
                await self._remote.upsert_document(result.to_remote_record())

            self._put_reconciled(result, local)
            if self._conflicts.remove(document_id):
                logger.info("Cleared stale conflict for %s after reconciliation.", document_id)
            logger.info("%s %s at version %d.", _ACTION_VERBS[decision.action], document_id, result.version)
            self._events.emit(
                events.SyncEvent.DOCUMENT_SYNCED,
                events.DocumentSynced(document_id=document_id, action=decision.action, document=result),
            )
            return decision.action

    async def perform_full_sync(self, owner_id: str) -> types.SyncSummary:
        """Sync every locally known document for ``owner_id``.

        One document failing emits ``syncFailed`` and the loop moves on. A pass
        already running for the owner makes this call return a skipped summary.
        """
        if owner_id in self._in_flight:
            logger.info("Full sync for %s is already running; skipping.", owner_id)
            return types.SyncSummary(owner_id=owner_id, skipped=True)
        self._in_flight.add(owner_id)
        generation = self._generation
        try:
            documents = self.list_documents(owner_id)
            summary = types.SyncSummary(owner_id=owner_id, documents_count=len(documents))
            for document in documents:
                try:
                    action = await self.sync_document(document.id, owner_id)
                except Exception as exc:
                    summary.failed += 1
                    logger.warning("Sync failed for %s: %s", document.id, exc)
                    self._events.emit(
                        events.SyncEvent.SYNC_FAILED,
                        events.SyncFailed(owner_id=owner_id, error=exc, document_id=document.id),
                    )
                    continue
                if action == types.SyncAction.CONFLICT:
                    summary.conflicted += 1
                elif action != types.SyncAction.DISCARDED:
                    summary.synced += 1
            if generation != self._generation:
                logger.debug("Full sync for %s outlived cleanup; not recording it.", owner_id)
                return summary
            if summary.failed == 0:
                state_store.set_last_sync(self._store, self._clock())
        finally:
            self._in_flight.discard(owner_id)

        logger.info(
            "Full sync for %s: %d document(s), %d synced, %d conflicted, %d failed.",
            owner_id,
            summary.documents_count,
            summary.synced,
            summary.conflicted,
            summary.failed,
        )
        self._events.emit(events.SyncEvent.SYNC_COMPLETED, events.SyncCompleted(summary=summary))
        return summary

    async def resolve_conflict(
        self,
        document_id: str,
        resolution: types.ConflictResolution | str,
        *,
        content: Optional[str] = None,
    ) -> types.SyncableDocument:
        """End an open conflict with the caller's chosen resolution."""
        resolution = types.ConflictResolution(resolution)
        async with self._lock_for(document_id):
            conflict = self._conflicts.get(document_id)
            if conflict is None:
                raise merge.ConflictResolutionError(f"No open conflict for document {document_id}.")
            owner_id = conflict.local.owner_id
            record = await self._remote.fetch_document(document_id, owner_id)
            if record is not None:
                current = types.SyncableDocument.from_remote_record(record)
                if current.version > conflict.remote.version:
                    raise merge.StaleConflictError(
                        f"Document {document_id} changed remotely after the conflict was detected; sync it again."
                    )
            local = self._documents.get(document_id)
            if local is None or not _same_edit(local, conflict.local):
                raise merge.StaleConflictError(
                    f"Document {document_id} was edited locally after the conflict was detected; sync it again."
                )
            resolved = merge.resolve_conflict(
                conflict,
                resolution,
                device_id=self.device_id,
                now=self._clock(),
                content=content,
            )
            await self._remote.upsert_document(resolved.to_remote_record())
            self._put_reconciled(resolved, local)
            self._conflicts.remove(document_id)

        logger.info("Resolved conflict for %s using %s.", document_id, resolution.value)
        self._events.emit(
            events.SyncEvent.CONFLICT_RESOLVED,
            events.ConflictResolved(document_id=document_id, resolution=resolution, document=resolved),
        )
        return resolved

    # ------------------------------------------------------------------ offline support

    async def enable_offline_mode(self) -> Dict[str, Any]:
        """Cache the essential reference data locally and register the asset worker."""
        templates = await self._reference_data.templates()
        rules = await self._reference_data.validation_rules()
        cached_at = self._clock()
        payload = {"templates": templates, "validation_rules": rules, "cached_at": cached_at}
        self._store.set(state_store.OFFLINE_CACHE_KEY, payload)
        await self._register_assets()
        datasets = {"templates": len(templates), "validation_rules": len(rules)}
        logger.info("Offline mode enabled (%d templates, %d rule sets).", len(templates), len(rules))
        self._events.emit(
            events.SyncEvent.OFFLINE_MODE_ENABLED,
            events.OfflineModeEnabled(cached_at=cached_at, datasets=datasets),
        )
        return payload

    def get_offline_reference_data(self) -> Optional[Dict[str, Any]]:
        return self._store.get(state_store.OFFLINE_CACHE_KEY)

    # ------------------------------------------------------------------ status

    def get_sync_status(self, owner_id: Optional[str] = None) -> types.SyncStatus:
        """Counts cover ``owner_id``, defaulting to the initialized owner; all owners when neither is set."""
        owner_id = owner_id or self._owner_id
        return types.SyncStatus(
            is_online=self._network.is_online(),
            last_sync_time=state_store.get_last_sync(self._store),
            pending_changes=self._documents.pending_count(owner_id),
            sync_in_progress=bool(self._in_flight),
            conflicts=self._conflicts.all(),
            modified_changes=self._documents.modified_count(owner_id),
        )

    def list_conflicts(self) -> List[types.SyncConflict]:
        return self._conflicts.all()

    # ------------------------------------------------------------------ internals

    def _ensure_device_id(self) -> str:
        device_id = self._store.get(state_store.DEVICE_ID_KEY)
        if device_id:
            return str(device_id)
        device_id = generate_device_id(self._clock())
        self._store.set(state_store.DEVICE_ID_KEY, device_id)
        logger.info("Generated device id %s.", device_id)
        return device_id

    async def _register_device(self, owner_id: str, device_id: str) -> None:
        now = self._clock()
        stored = self._store.get(state_store.DEVICE_RECORD_KEY)
        registered_at = now
        if isinstance(stored, dict) and stored.get("device_id") == device_id:
            registered_at = types.DeviceRecord.from_dict(stored).registered_at or now
        record = types.DeviceRecord(
            device_id=device_id,
            owner_id=owner_id,
            display_name=self._device_info.display_name(),
            device_class=self._device_info.device_class(),
            platform=self._device_info.platform(),
            last_seen=now,
            is_online=self._network.is_online(),
            sync_enabled=True,
            registered_at=registered_at,
        )
        # Registration is best effort; sync works without it.
        try:
            self._store.set(state_store.DEVICE_RECORD_KEY, record.to_dict())
            await self._remote.upsert_device(record.to_dict())
        except Exception as exc:
            logger.warning("Device registration for %s failed: %s", device_id, exc)
            return
        logger.debug("Registered device %s (%s).", device_id, record.device_class.value)

    async def _register_assets(self) -> None:
        try:
            await self._asset_worker.register()
        except Exception as exc:
            logger.warning("Asset worker registration failed: %s", exc)

    async def _run_periodic_sync(self, owner_id: str, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._sync_interval)
            if generation != self._generation:
                return
            if not self._network.is_online():
                logger.debug("Offline; skipping scheduled sync for %s.", owner_id)
                continue
            try:
                await self.perform_full_sync(owner_id)
            except Exception as exc:
                logger.error("Scheduled sync for %s failed: %s", owner_id, exc)
                self._events.emit(events.SyncEvent.SYNC_FAILED, events.SyncFailed(owner_id=owner_id, error=exc))

    def _on_network_change(self, online: bool) -> None:
        if online:
            logger.info("Network restored; sync resumes on the next tick.")
            self._events.emit(events.SyncEvent.ONLINE, events.NetworkChanged(is_online=True))
        else:
            logger.info("Network lost; sync paused.")
            self._events.emit(events.SyncEvent.OFFLINE, events.NetworkChanged(is_online=False))

    def _record_conflict(
        self,
        local: types.SyncableDocument,
        remote: types.SyncableDocument,
        kind: types.ConflictKind,
    ) -> None:
        conflict = types.SyncConflict(
            document_id=local.id,
            local=local,
            remote=remote,
            conflict_kind=kind,
            detected_at=self._clock(),
        )
        if not self._conflicts.record(conflict):
            logger.debug("Conflict for %s is already logged.", local.id)
            return
        logger.warning("Conflict detected for %s (%s).", local.id, kind.value)
        self._events.emit(events.SyncEvent.CONFLICT_DETECTED, events.ConflictDetected(conflict=conflict))

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        return lock

    def _put_reconciled(self, result: types.SyncableDocument, seen: Optional[types.SyncableDocument]) -> None:
        current = self._documents.get(result.id)
        if current is not None and seen is not None and current != seen:
            # Edited while the remote write was in flight; keep the edit on the new base.
            logger.info("Kept local edit to %s made during sync.", result.id)
            result = current.with_changes(
                version=result.version,
                last_synced_at=result.last_synced_at,
                last_synced_content=result.last_synced_content,
            )
        self._documents.put(result)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


_ACTION_VERBS = {
    types.SyncAction.PUSH: "Pushed",
    types.SyncAction.PULL: "Pulled",
    types.SyncAction.MERGE: "Merged",
}


def _check_owner(document: types.SyncableDocument, owner_id: str) -> None:
    if document.owner_id != owner_id:
        raise SyncError(f"Document {document.id} does not belong to {owner_id}.")


def _same_edit(a: types.SyncableDocument, b: types.SyncableDocument) -> bool:
    return (
        a.content == b.content
        and a.title == b.title
        and a.metadata == b.metadata
        and a.deleted_at == b.deleted_at
    )


__all__ = ["DEFAULT_SYNC_INTERVAL", "SyncEngine", "SyncError"]
