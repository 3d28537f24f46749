"""Reference data needed to create and edit documents without a network."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)

ESSENTIAL_TEMPLATES: List[Dict[str, Any]] = [
    {
        "id": "basic-sk-holographic",
        "jurisdiction": "SK",
        "type": "holographic",
        "content": "Basic Slovak holographic will template...",
    },
    {
        "id": "basic-cz-holographic",
        "jurisdiction": "CZ",
        "type": "holographic",
        "content": "Basic Czech holographic will template...",
    },
]

ESSENTIAL_VALIDATION_RULES: List[Dict[str, Any]] = [
    {"jurisdiction": "SK", "rules": ["executor_required", "signature_required", "date_required"]},
    {"jurisdiction": "CZ", "rules": ["executor_required", "signature_required", "date_required"]},
]


class ReferenceDataProvider(Protocol):
    async def templates(self) -> List[Dict[str, Any]]:
        ...

    async def validation_rules(self) -> List[Dict[str, Any]]:
        ...


class AssetWorker(Protocol):
    """Background worker that caches static assets for offline use."""

    async def register(self) -> None:
        ...


class StaticReferenceData:
    """The bundled jurisdiction templates and validation rule sets."""

    async def templates(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(ESSENTIAL_TEMPLATES)

    async def validation_rules(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(ESSENTIAL_VALIDATION_RULES)


class LoggingAssetWorker:
    """Stand-in worker for hosts without an asset cache; records registrations."""

    def __init__(self) -> None:
        self.registrations = 0

    async def register(self) -> None:
        self.registrations += 1
        logger.debug("Asset worker registration #%d.", self.registrations)


__all__ = [
    "AssetWorker",
    "ESSENTIAL_TEMPLATES",
    "ESSENTIAL_VALIDATION_RULES",
    "LoggingAssetWorker",
    "ReferenceDataProvider",
    "StaticReferenceData",
]
