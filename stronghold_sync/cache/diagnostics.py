"""Destinations for slow-query records and error reports."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from stronghold_sync.cache.models import SlowQueryRecord

logger = logging.getLogger(__name__)

SLOW_QUERY_LOG_NAME = "slow_queries.jsonl"


class DiagnosticsSink(Protocol):
    """Fire-and-forget; callers log and ignore anything a sink raises."""

    def record_slow_query(self, record: SlowQueryRecord) -> None:
        ...

    def record_error(self, context: str, error: BaseException) -> None:
        ...


class LoggingDiagnosticsSink:
    def record_slow_query(self, record: SlowQueryRecord) -> None:
        logger.info("Slow query %.0fms: %s\n%s", record.duration_ms, record.query, record.stack_trace)

    def record_error(self, context: str, error: BaseException) -> None:
        logger.info("%s: %s", context, error)


class JsonlDiagnosticsSink:
    """Append one JSON object per line to ``path``."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def record_slow_query(self, record: SlowQueryRecord) -> None:
        self._append({"kind": "slow_query", **record.to_dict()})

    def record_error(self, context: str, error: BaseException) -> None:
        self._append({"kind": "error", "context": context, "error": f"{type(error).__name__}: {error}"})

    def _append(self, payload: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True) + "\n")


__all__ = ["DiagnosticsSink", "JsonlDiagnosticsSink", "LoggingDiagnosticsSink", "SLOW_QUERY_LOG_NAME"]
