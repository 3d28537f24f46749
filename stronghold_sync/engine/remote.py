"""Remote document store interface and bundled implementations."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")
REQUIRED_FIELDS = ("id", "owner_id", "version")


class RemoteStoreError(RuntimeError):
    """Raised when the remote store cannot be read or written."""


class RemoteDocumentStore(Protocol):
    """Authoritative document store, reached over the network."""

    async def fetch_document(self, document_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        """Return the record for ``document_id`` owned by ``owner_id``, or None."""

    async def upsert_document(self, record: Mapping[str, Any]) -> None:
        ...

    async def upsert_device(self, record: Mapping[str, Any]) -> None:
        ...


def validate_record(record: Mapping[str, Any]) -> None:
    missing = [name for name in REQUIRED_FIELDS if record.get(name) in (None, "")]
    if missing:
        raise RemoteStoreError(f"Remote record is missing field(s): {', '.join(missing)}.")


class InMemoryRemoteStore:
    """Remote store held in process memory."""

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.devices: Dict[str, Dict[str, Any]] = {}

    async def fetch_document(self, document_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        record = self.documents.get(document_id)
        if record is None or record.get("owner_id") != owner_id:
            return None
        return copy.deepcopy(record)

    async def upsert_document(self, record: Mapping[str, Any]) -> None:
        validate_record(record)
        self.documents[str(record["id"])] = copy.deepcopy(dict(record))

    async def upsert_device(self, record: Mapping[str, Any]) -> None:
        device_id = record.get("device_id")
        if not device_id:
            raise RemoteStoreError("Device records require a device_id.")
        self.devices[str(device_id)] = copy.deepcopy(dict(record))


class DirectoryRemoteStore:
    """Remote store backed by a shared directory of JSON files.

    Layout::

        <root>/documents/<document id>.json
        <root>/devices/<device id>.json

    File access runs in a worker thread via :func:`asyncio.to_thread`.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    async def fetch_document(self, document_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        record = await asyncio.to_thread(self._read_if_exists, self._path("documents", document_id))
        if record is None or record.get("owner_id") != owner_id:
            return None
        return record

    async def upsert_document(self, record: Mapping[str, Any]) -> None:
        validate_record(record)
        await asyncio.to_thread(self._write, self._path("documents", str(record["id"])), record)

    async def upsert_device(self, record: Mapping[str, Any]) -> None:
        device_id = record.get("device_id")
        if not device_id:
            raise RemoteStoreError("Device records require a device_id.")
        await asyncio.to_thread(self._write, self._path("devices", str(device_id)), record)

    async def list_records(self, kind: str) -> List[Dict[str, Any]]:
        """Every record stored under ``kind``, ordered by file name."""
        return await asyncio.to_thread(self._read_all, self._root / _SAFE_NAME.sub("_", kind))

    def _path(self, kind: str, identifier: str) -> Path:
        return self._root / kind / f"{_SAFE_NAME.sub('_', identifier)}.json"

    def _read_if_exists(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        return self._read(path)

    def _read_all(self, directory: Path) -> List[Dict[str, Any]]:
        if not directory.is_dir():
            return []
        return [self._read(path) for path in sorted(directory.glob("*.json"))]

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            payload = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise RemoteStoreError(f"Failed to parse remote record {path}: {exc}") from exc
        except OSError as exc:
            raise RemoteStoreError(f"Unable to read remote record {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise RemoteStoreError(f"Remote record {path} is not an object.")
        return payload

    def _write(self, path: Path, record: Mapping[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(dict(record), indent=2, sort_keys=True) + "\n")
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            raise RemoteStoreError(f"Unable to write remote record {path}: {exc}") from exc
        logger.debug("Wrote remote record %s.", path.name)


__all__ = [
    "DirectoryRemoteStore",
    "InMemoryRemoteStore",
    "RemoteDocumentStore",
    "RemoteStoreError",
    "validate_record",
]
