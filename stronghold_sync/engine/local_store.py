"""Device-local persistent key-value stores."""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class LocalStoreError(RuntimeError):
    """Raised when a stored value cannot be read or written."""


class LocalStore(Protocol):
    """Survives restarts on one device; values are JSON-compatible."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryLocalStore:
    """Process-local store; values are deep-copied so callers cannot alias them."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str) -> Optional[Any]:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileLocalStore:
    """One JSON file per key under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise LocalStoreError(f"Failed to parse stored value {path}: {exc}") from exc
        except OSError as exc:  # pragma: no cover - filesystem failure
            raise LocalStoreError(f"Unable to read stored value {path}: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        try:
            data = json.dumps(value, indent=2, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise LocalStoreError(f"Value for '{key}' is not JSON serializable: {exc}") from exc
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(data + "\n")
            tmp_path.replace(path)
        except OSError as exc:
            raise LocalStoreError(f"Unable to write stored value {path}: {exc}") from exc
        logger.debug("Stored %s (%d bytes).", key, len(data))

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem failure
            raise LocalStoreError(f"Unable to delete stored value {path}: {exc}") from exc

    def keys(self) -> list[str]:
        if not self._root.exists():
            return []
        return sorted(path.stem for path in self._root.glob("*.json"))

    def _path_for(self, key: str) -> Path:
        if not key:
            raise LocalStoreError("Store keys must be non-empty.")
        return self._root / f"{_SAFE_KEY.sub('_', key)}.json"


__all__ = ["JsonFileLocalStore", "LocalStore", "LocalStoreError", "MemoryLocalStore"]
