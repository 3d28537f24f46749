"""Read-through cache for remote queries with latency metrics."""

from __future__ import annotations

import collections
import dataclasses
import json
import logging
import time
import traceback
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

from stronghold_sync.cache import report
from stronghold_sync.cache.diagnostics import DiagnosticsSink, LoggingDiagnosticsSink
from stronghold_sync.cache.eviction import choose_victim
from stronghold_sync.cache.executor import Aggregation, Join, Query, QueryExecutor, QueryResult
from stronghold_sync.cache.models import (
    CacheConfig,
    CacheEntry,
    Page,
    PerformanceReport,
    QueryMetric,
    SlowQueryRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_SLOW_QUERY_MS = 1000
AGGREGATE_TTL_MS = 600_000
METRICS_LIMIT = 1000

Loader = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[int, int], None]


class QueryCacheError(RuntimeError):
    """Raised when the cache is asked for something it is not set up to do."""


class BatchWriteError(RuntimeError):
    """A chunk of a batched write failed; earlier chunks stay written."""

    def __init__(self, destination: str, written: int, total: int, cause: BaseException) -> None:
        super().__init__(f"Batch write to {destination} failed after {written} of {total} record(s): {cause}")
        self.destination = destination
        self.written = written
        self.total = total


class QueryCache:
    """Cache remote reads by caller-chosen key.

    Entries expire ``ttl_ms`` after they are stored and are dropped lazily on the
    next access. A full cache evicts one entry, chosen by the configured
    strategy, before a new key is inserted.
    """

    def __init__(
        self,
        executor: Optional[QueryExecutor] = None,
        *,
        config: Optional[CacheConfig] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.perf_counter,
        slow_query_ms: float = DEFAULT_SLOW_QUERY_MS,
        metrics_limit: int = METRICS_LIMIT,
    ) -> None:
        self._executor = executor
        self._config = config or CacheConfig()
        self._diagnostics = diagnostics or LoggingDiagnosticsSink()
        self._clock = clock
        self._timer = timer
        self._slow_query_ms = slow_query_ms
        self._entries: Dict[str, CacheEntry] = {}
        self._metrics: Deque[QueryMetric] = collections.deque(maxlen=metrics_limit)
        self._access_seq = 0

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def slow_query_ms(self) -> float:
        return self._slow_query_ms

    @property
    def diagnostics(self) -> DiagnosticsSink:
        return self._diagnostics

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def get(
        self,
        key: str,
        loader: Loader,
        config: Optional[CacheConfig] = None,
        *,
        force_refresh: bool = False,
        query: Optional[str] = None,
    ) -> Any:
        """Return the cached value for ``key`` or load, record and store it.

        A loader error propagates and nothing is cached. ``force_refresh`` skips
        the lookup but still stores the fresh value.
        """
        config = config or self._config
        label = query or key
        if not force_refresh:
            entry = self._lookup(key)
            if entry is not None:
                self._touch(entry)
                self._record(label, 0.0, _row_count(entry.value), cache_hit=True)
                return entry.value

        started = self._timer()
        value = await loader()
        duration_ms = (self._timer() - started) * 1000

        self._record(label, duration_ms, _row_count(value), cache_hit=False)
        self._store(key, value, config)
        if duration_ms > self._slow_query_ms:
            self._handle_slow_query(label, duration_ms)
        return value

    async def paginated_read(
        self,
        source: str,
        *,
        page_size: int = 50,
        cursor: Optional[Any] = None,
        order_by: str = "created_at",
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        """Read one page, newest first, continuing below ``cursor``."""
        if page_size <= 0:
            raise ValueError("page_size must be positive.")
        executor = self._require_executor()
        active_filters = _active(filters)
        query = Query(
            source=source,
            filters=active_filters,
            order_by=order_by,
            descending=True,
            limit=page_size + 1,
            cursor=cursor,
        )
        key_params = {"cursor": cursor, "filters": active_filters, "order_by": order_by, "page_size": page_size}
        key = f"paginated_{source}_{_key_json(key_params)}"

        result: QueryResult = await self.get(key, lambda: executor.execute(query), query=query.describe())
        rows = list(result.rows)
        has_more = len(rows) > page_size
        if has_more:
            rows = rows[:page_size]
        next_cursor = rows[-1].get(order_by) if has_more and rows else None
        return Page(rows=rows, next_cursor=next_cursor, has_more=has_more, total_count=result.total_count)

    async def aggregated_read(
        self,
        source: str,
        aggregation: Aggregation,
        *,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Grouped aggregates over ``source``, cached for ``AGGREGATE_TTL_MS``."""
        executor = self._require_executor()
        active_filters = _active(filters)
        query = Query(source=source, filters=active_filters, aggregation=aggregation)
        key = f"aggregated_{source}_{_key_json(aggregation.to_dict())}_{_key_json(active_filters)}"
        config = dataclasses.replace(self._config, ttl_ms=AGGREGATE_TTL_MS)
        result: QueryResult = await self.get(key, lambda: executor.execute(query), config, query=query.describe())
        return list(result.rows)

    async def joined_read(
        self,
        source: str,
        joins: Sequence[Join],
        *,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Rows of ``source`` with related rows attached under each joined table's name."""
        executor = self._require_executor()
        active_filters = _active(filters)
        query = Query(source=source, filters=active_filters, joins=tuple(joins))
        key = f"joined_{source}_{_key_json([join.to_dict() for join in joins])}_{_key_json(active_filters)}"
        result: QueryResult = await self.get(key, lambda: executor.execute(query), query=query.describe())
        return list(result.rows)

    async def batch_write(
        self,
        destination: str,
        records: Iterable[Mapping[str, Any]],
        *,
        batch_size: int = 100,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Insert ``records`` in sequential chunks; returns the number written.

        The first failing chunk stops the write and raises :class:`BatchWriteError`.
        Chunks written before it are not rolled back.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        executor = self._require_executor()
        pending = list(records)
        total = len(pending)
        written = 0
        for start in range(0, total, batch_size):
            chunk = pending[start : start + batch_size]
            try:
                await executor.insert(destination, chunk)
            except Exception as exc:
                logger.error("Batch write to %s failed at record %d: %s", destination, written, exc)
                self._report_error(f"batch write to {destination}", exc)
                raise BatchWriteError(destination, written, total, exc) from exc
            written += len(chunk)
            if on_progress is not None:
                on_progress(written, total)
        logger.debug("Wrote %d record(s) to %s.", written, destination)
        return written

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear_cache(self) -> None:
        self._entries.clear()
        logger.debug("Query cache cleared.")

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": list(self._entries),
            "metrics": {
                key: {"hits": entry.hits, "last_access": entry.last_access}
                for key, entry in self._entries.items()
            },
        }

    def get_performance_report(self) -> PerformanceReport:
        return report.build_report(list(self._metrics), self._entries, self._slow_query_ms)

    @property
    def metrics(self) -> List[QueryMetric]:
        return list(self._metrics)

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("Cache entry %s expired.", key)
            return None
        return entry

    def _touch(self, entry: CacheEntry) -> None:
        self._access_seq += 1
        entry.hits += 1
        entry.last_access = self._clock()
        entry.access_seq = self._access_seq

    def _store(self, key: str, value: Any, config: CacheConfig) -> None:
        # A refreshed key is re-inserted at the back and never triggers eviction.
        if self._entries.pop(key, None) is None:
            while len(self._entries) >= config.max_size:
                victim = choose_victim(self._entries, config.strategy)
                if victim is None:
                    break
                del self._entries[victim]
                logger.debug("Evicted %s (%s).", victim, config.strategy.value)
        now = self._clock()
        self._access_seq += 1
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expiry=now + config.ttl_ms / 1000,
            last_access=now,
            access_seq=self._access_seq,
        )

    def _record(self, label: str, duration_ms: float, row_count: int, *, cache_hit: bool) -> None:
        self._metrics.append(
            QueryMetric(
                query=label,
                duration_ms=duration_ms,
                row_count=row_count,
                cache_hit=cache_hit,
                timestamp=self._clock(),
            )
        )

    def _handle_slow_query(self, label: str, duration_ms: float) -> None:
        logger.warning("Slow query detected: %.0fms (%s)", duration_ms, label)
        record = SlowQueryRecord(
            query=label,
            duration_ms=duration_ms,
            timestamp=self._clock(),
            stack_trace="".join(traceback.format_stack()),
        )
        try:
            self._diagnostics.record_slow_query(record)
        except Exception as exc:
            logger.error("Failed to log slow query: %s", exc)

    def _report_error(self, context: str, error: BaseException) -> None:
        try:
            self._diagnostics.record_error(context, error)
        except Exception as exc:
            logger.error("Failed to report error to diagnostics: %s", exc)

    def _require_executor(self) -> QueryExecutor:
        if self._executor is None:
            raise QueryCacheError("This cache has no query executor configured.")
        return self._executor


def _active(filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {name: value for name, value in (filters or {}).items() if value is not None}


def _key_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _row_count(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, QueryResult):
        return len(value.rows)
    if isinstance(value, (list, tuple)):
        return len(value)
    return 1


__all__ = [
    "AGGREGATE_TTL_MS",
    "BatchWriteError",
    "DEFAULT_SLOW_QUERY_MS",
    "METRICS_LIMIT",
    "QueryCache",
    "QueryCacheError",
]
