"""Tab completion support for the stronghold-sync CLI."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Optional

from . import config
from .engine import state_store
from .engine.local_store import JsonFileLocalStore, LocalStoreError


def document_completer(prefix: str, parsed_args: argparse.Namespace, **kwargs) -> Iterable[str]:
    """Complete document ids from the local document cache."""
    store = _store_for(parsed_args)
    if store is None:
        return []
    try:
        documents = state_store.DocumentCache(store).all()
    except LocalStoreError:
        return []
    return sorted(doc.id for doc in documents if doc.id.startswith(prefix))


def conflict_completer(prefix: str, parsed_args: argparse.Namespace, **kwargs) -> Iterable[str]:
    """Complete ids of documents with an open conflict."""
    store = _store_for(parsed_args)
    if store is None:
        return []
    try:
        conflicts = state_store.ConflictLog(store).all()
    except LocalStoreError:
        return []
    return sorted(c.document_id for c in conflicts if c.document_id.startswith(prefix))


def _store_for(parsed_args: argparse.Namespace) -> Optional[JsonFileLocalStore]:
    # Completion must never create directories, so the config dir is resolved but not ensured.
    config_dir_arg = getattr(parsed_args, "config_dir", None)
    base = Path(config_dir_arg).expanduser() if config_dir_arg else config.get_base_config_dir()
    store_dir = base / "store"
    if not store_dir.is_dir():
        return None
    return JsonFileLocalStore(store_dir)


__all__ = ["conflict_completer", "document_completer"]
