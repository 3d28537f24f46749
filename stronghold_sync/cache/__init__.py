"""Query cache package: read-through caching, pagination, batched writes, metrics."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from stronghold_sync import config as config_mod

from . import diagnostics, eviction, executor, models, query_cache, report
from .diagnostics import DiagnosticsSink, JsonlDiagnosticsSink, LoggingDiagnosticsSink
from .executor import (
    Aggregation,
    DirectoryQueryExecutor,
    InMemoryQueryExecutor,
    Join,
    Query,
    QueryExecutor,
    QueryResult,
)
from .models import CacheConfig, EvictionStrategy, Page, PerformanceReport
from .query_cache import BatchWriteError, QueryCache, QueryCacheError


def build_query_cache(
    block: config_mod.CacheBlock,
    *,
    executor: Optional[QueryExecutor] = None,
    diagnostics_dir: Optional[Path] = None,
) -> QueryCache:
    """A cache configured from the ``[cache]`` settings block."""
    sink: DiagnosticsSink
    if diagnostics_dir is not None:
        sink = JsonlDiagnosticsSink(diagnostics_dir / diagnostics.SLOW_QUERY_LOG_NAME)
    else:
        sink = LoggingDiagnosticsSink()
    return QueryCache(
        executor,
        config=CacheConfig(ttl_ms=block.ttl_ms, max_size=block.max_size, strategy=block.strategy),
        diagnostics=sink,
        slow_query_ms=block.slow_query_ms,
    )


__all__ = [
    "Aggregation",
    "BatchWriteError",
    "CacheConfig",
    "DiagnosticsSink",
    "DirectoryQueryExecutor",
    "EvictionStrategy",
    "InMemoryQueryExecutor",
    "Join",
    "JsonlDiagnosticsSink",
    "LoggingDiagnosticsSink",
    "Page",
    "PerformanceReport",
    "Query",
    "QueryCache",
    "QueryCacheError",
    "QueryExecutor",
    "QueryResult",
    "build_query_cache",
    "diagnostics",
    "eviction",
    "executor",
    "models",
    "query_cache",
    "report",
]
