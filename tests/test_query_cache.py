"""Tests for the read-through query cache."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from stronghold_sync import config
from stronghold_sync.cache import (
    Aggregation,
    BatchWriteError,
    CacheConfig,
    DirectoryQueryExecutor,
    EvictionStrategy,
    InMemoryQueryExecutor,
    Join,
    JsonlDiagnosticsSink,
    QueryCache,
    QueryCacheError,
    build_query_cache,
)
from stronghold_sync.cache.eviction import choose_victim
from stronghold_sync.cache.executor import QueryExecutionError
from stronghold_sync.cache.models import CacheEntry, SlowQueryRecord
from stronghold_sync.cache.query_cache import AGGREGATE_TTL_MS
from stronghold_sync.engine.remote import DirectoryRemoteStore


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class SteppingTimer:
    """Each reading advances by ``step`` seconds, so every load takes ``step``."""

    def __init__(self, step: float) -> None:
        self.step = step
        self.value = 0.0

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


class RecordingSink:
    def __init__(self) -> None:
        self.slow: list[SlowQueryRecord] = []
        self.errors: list[tuple[str, BaseException]] = []

    def record_slow_query(self, record: SlowQueryRecord) -> None:
        self.slow.append(record)

    def record_error(self, context: str, error: BaseException) -> None:
        self.errors.append((context, error))


class BrokenSink:
    def record_slow_query(self, record: SlowQueryRecord) -> None:
        raise OSError("diagnostics endpoint down")

    def record_error(self, context: str, error: BaseException) -> None:
        raise OSError("diagnostics endpoint down")


class FailingInsertExecutor(InMemoryQueryExecutor):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__({"audit": []})
        self.fail_on_call = fail_on_call
        self.insert_calls = 0

    async def insert(self, destination, rows):
        self.insert_calls += 1
        if self.insert_calls == self.fail_on_call:
            raise QueryExecutionError("connection reset")
        await super().insert(destination, rows)


class CountingLoader:
    def __init__(self, value=None) -> None:
        self.calls = 0
        self.value = value

    async def __call__(self):
        self.calls += 1
        return self.value if self.value is not None else f"value-{self.calls}"


def _rows(count: int) -> list[dict]:
    return [{"id": f"doc-{index}", "owner_id": "o1", "created_at": index} for index in range(1, count + 1)]


class QueryCacheTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.sink = RecordingSink()

    def _cache(self, *, executor=None, **config_kwargs) -> QueryCache:
        return QueryCache(
            executor,
            config=CacheConfig(**config_kwargs),
            diagnostics=self.sink,
            clock=self.clock,
            timer=SteppingTimer(0.001),
        )


class TestGet(QueryCacheTestCase):
    async def test_loader_runs_once_within_ttl(self):
        cache = self._cache(ttl_ms=1000)
        loader = CountingLoader()
        self.assertEqual(await cache.get("k", loader), "value-1")
        self.clock.now = 0.5
        self.assertEqual(await cache.get("k", loader), "value-1")
        self.assertEqual(loader.calls, 1)
        self.assertEqual([metric.cache_hit for metric in cache.metrics], [False, True])
        self.assertEqual(cache.metrics[1].duration_ms, 0.0)

    async def test_expired_entry_is_reloaded(self):
        cache = self._cache(ttl_ms=1000)
        loader = CountingLoader()
        await cache.get("k", loader)
        self.clock.now = 1.0
        self.assertEqual(await cache.get("k", loader), "value-2")
        self.assertEqual(loader.calls, 2)

    async def test_force_refresh_skips_lookup_but_stores(self):
        cache = self._cache()
        loader = CountingLoader()
        await cache.get("k", loader)
        self.assertEqual(await cache.get("k", loader, force_refresh=True), "value-2")
        self.assertEqual(await cache.get("k", loader), "value-2")
        self.assertEqual(loader.calls, 2)

    async def test_per_call_config_overrides_ttl(self):
        cache = self._cache(ttl_ms=60_000)
        loader = CountingLoader()
        await cache.get("k", loader, CacheConfig(ttl_ms=100))
        self.clock.now = 0.2
        await cache.get("k", loader)
        self.assertEqual(loader.calls, 2)

    async def test_loader_error_caches_nothing(self):
        cache = self._cache()

        async def failing():
            raise QueryExecutionError("timeout")

        with self.assertRaises(QueryExecutionError):
            await cache.get("k", failing)
        self.assertNotIn("k", cache)
        self.assertEqual(cache.metrics, [])

    async def test_metrics_are_bounded(self):
        cache = QueryCache(clock=self.clock, diagnostics=self.sink, metrics_limit=3)
        loader = CountingLoader()
        for _ in range(5):
            await cache.get("k", loader)
        self.assertEqual(len(cache.metrics), 3)


class TestEviction(QueryCacheTestCase):
    async def test_lru_drops_least_recently_accessed(self):
        cache = self._cache(max_size=2, strategy="lru")
        await cache.get("k1", CountingLoader())
        await cache.get("k2", CountingLoader())
        await cache.get("k1", CountingLoader())
        await cache.get("k3", CountingLoader())
        self.assertEqual(cache.get_cache_stats()["keys"], ["k1", "k3"])

    async def test_fifo_drops_first_inserted_even_when_recently_read(self):
        cache = self._cache(ttl_ms=1000, max_size=2, strategy=EvictionStrategy.FIFO)
        await cache.get("k1", CountingLoader())
        await cache.get("k2", CountingLoader())
        await cache.get("k1", CountingLoader())
        await cache.get("k3", CountingLoader())
        self.assertNotIn("k1", cache)
        self.assertIn("k2", cache)
        self.assertIn("k3", cache)

    async def test_lfu_drops_least_hit(self):
        cache = self._cache(max_size=2, strategy="lfu")
        await cache.get("k1", CountingLoader())
        await cache.get("k2", CountingLoader())
        await cache.get("k1", CountingLoader())
        await cache.get("k1", CountingLoader())
        await cache.get("k2", CountingLoader())
        await cache.get("k3", CountingLoader())
        self.assertEqual(sorted(cache.get_cache_stats()["keys"]), ["k1", "k3"])

    async def test_refreshing_existing_key_does_not_evict(self):
        cache = self._cache(max_size=2, strategy="fifo")
        await cache.get("k1", CountingLoader())
        await cache.get("k2", CountingLoader())
        await cache.get("k1", CountingLoader(), force_refresh=True)
        self.assertEqual(len(cache), 2)
        self.assertEqual(cache.get_cache_stats()["keys"], ["k2", "k1"])

    def test_choose_victim_on_empty_map(self):
        self.assertIsNone(choose_victim({}, "lru"))

    def test_lru_ties_fall_to_earlier_access(self):
        entries = {
            "a": CacheEntry(key="a", value=1, expiry=10, last_access=5, access_seq=2),
            "b": CacheEntry(key="b", value=2, expiry=10, last_access=5, access_seq=1),
        }
        self.assertEqual(choose_victim(entries, EvictionStrategy.LRU), "b")

    def test_config_rejects_bad_values(self):
        with self.assertRaises(ValueError):
            CacheConfig(ttl_ms=0)
        with self.assertRaises(ValueError):
            CacheConfig(max_size=0)
        with self.assertRaises(ValueError):
            CacheConfig(strategy="random")


class TestPaginatedRead(QueryCacheTestCase):
    async def test_cursor_walks_every_row_once(self):
        executor = InMemoryQueryExecutor({"documents": _rows(7)})
        cache = self._cache(executor=executor)

        first = await cache.paginated_read("documents", page_size=3)
        self.assertEqual([row["created_at"] for row in first.rows], [7, 6, 5])
        self.assertTrue(first.has_more)
        self.assertEqual(first.next_cursor, 5)
        self.assertEqual(first.total_count, 7)

        second = await cache.paginated_read("documents", page_size=3, cursor=first.next_cursor)
        self.assertEqual([row["created_at"] for row in second.rows], [4, 3, 2])
        self.assertTrue(second.has_more)

        last = await cache.paginated_read("documents", page_size=3, cursor=second.next_cursor)
        self.assertEqual([row["created_at"] for row in last.rows], [1])
        self.assertFalse(last.has_more)
        self.assertIsNone(last.next_cursor)

    async def test_exactly_one_page_has_no_more(self):
        cache = self._cache(executor=InMemoryQueryExecutor({"documents": _rows(3)}))
        page = await cache.paginated_read("documents", page_size=3)
        self.assertEqual(len(page.rows), 3)
        self.assertFalse(page.has_more)
        self.assertIsNone(page.next_cursor)

    async def test_none_filters_are_dropped(self):
        executor = InMemoryQueryExecutor({"documents": _rows(2) + [{"id": "x", "owner_id": "o2", "created_at": 9}]})
        cache = self._cache(executor=executor)
        page = await cache.paginated_read("documents", filters={"owner_id": "o1", "status": None})
        self.assertEqual(dict(executor.executed[-1].filters), {"owner_id": "o1"})
        self.assertEqual(executor.executed[-1].limit, 51)
        self.assertEqual([row["id"] for row in page.rows], ["doc-2", "doc-1"])

    async def test_repeated_page_is_served_from_cache(self):
        executor = InMemoryQueryExecutor({"documents": _rows(5)})
        cache = self._cache(executor=executor)
        await cache.paginated_read("documents", page_size=2)
        await cache.paginated_read("documents", page_size=2)
        await cache.paginated_read("documents", page_size=4)
        self.assertEqual(len(executor.executed), 2)
        self.assertIn("ORDER BY created_at DESC", cache.metrics[0].query)

    async def test_invalid_requests(self):
        with self.assertRaises(QueryCacheError):
            await self._cache().paginated_read("documents")
        with self.assertRaises(ValueError):
            await self._cache(executor=InMemoryQueryExecutor()).paginated_read("documents", page_size=0)


PAYMENTS = [
    {"id": "p1", "owner_id": "o1", "kind": "will", "amount": 10},
    {"id": "p2", "owner_id": "o1", "kind": "trust", "amount": 30},
    {"id": "p3", "owner_id": "o1", "kind": "will", "amount": None},
    {"id": "p4", "owner_id": "o2", "kind": "will", "amount": 100},
]


class TestAggregatedRead(QueryCacheTestCase):
    async def test_groups_in_first_seen_order(self):
        executor = InMemoryQueryExecutor({"payments": PAYMENTS})
        cache = self._cache(executor=executor)
        aggregation = Aggregation(group_by=("kind",), sum=("amount",), count=("amount",), avg=("amount",), max=("amount",))

        rows = await cache.aggregated_read("payments", aggregation, filters={"owner_id": "o1", "status": None})

        self.assertEqual(
            rows,
            [
                {"kind": "will", "sum_amount": 10, "count_amount": 1, "avg_amount": 10.0, "max_amount": 10},
                {"kind": "trust", "sum_amount": 30, "count_amount": 1, "avg_amount": 30.0, "max_amount": 30},
            ],
        )
        expected_key = (
            'aggregated_payments_{"avg": ["amount"], "count": ["amount"], "group_by": ["kind"], '
            '"max": ["amount"], "sum": ["amount"]}_{"owner_id": "o1"}'
        )
        self.assertIn(expected_key, cache)
        self.assertIn("GROUP BY kind", cache.metrics[0].query)

    async def test_aggregates_stay_cached_for_ten_minutes(self):
        executor = InMemoryQueryExecutor({"payments": PAYMENTS})
        cache = self._cache(executor=executor, ttl_ms=1000)
        aggregation = Aggregation(sum=("amount",))

        await cache.aggregated_read("payments", aggregation)
        self.clock.now = 599
        await cache.aggregated_read("payments", aggregation)
        self.assertEqual(len(executor.executed), 1)

        self.clock.now = AGGREGATE_TTL_MS / 1000 + 1
        rows = await cache.aggregated_read("payments", aggregation)
        self.assertEqual(len(executor.executed), 2)
        self.assertEqual(rows, [{"sum_amount": 140}])

    async def test_empty_selection_without_grouping(self):
        cache = self._cache(executor=InMemoryQueryExecutor({"payments": PAYMENTS}))
        rows = await cache.aggregated_read(
            "payments",
            Aggregation(sum=("amount",), count=("amount",), avg=("amount",), min=("amount",)),
            filters={"owner_id": "o3"},
        )
        self.assertEqual(rows, [{"sum_amount": 0, "count_amount": 0, "avg_amount": None, "min_amount": None}])


class TestJoinedRead(QueryCacheTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.executor = InMemoryQueryExecutor(
            {
                "documents": [{"id": "w1", "owner_id": "o1"}, {"id": "w2", "owner_id": "o1"}, {"id": "w3", "owner_id": "o2"}],
                "versions": [
                    {"id": "v1", "document_id": "w1", "version": 1, "author": "a"},
                    {"id": "v2", "document_id": "w1", "version": 2, "author": "b"},
                    {"id": "v3", "document_id": "w2", "version": 1, "author": "a"},
                ],
            }
        )

    async def test_related_rows_are_attached(self):
        cache = self._cache(executor=self.executor)
        joins = [Join("versions", "document_id", select=("version",), filters={"author": "a"})]

        rows = await cache.joined_read("documents", joins, filters={"owner_id": "o1"})
        again = await cache.joined_read("documents", joins, filters={"owner_id": "o1"})

        self.assertEqual(
            rows,
            [
                {"id": "w1", "owner_id": "o1", "versions": [{"version": 1}]},
                {"id": "w2", "owner_id": "o1", "versions": [{"version": 1}]},
            ],
        )
        self.assertEqual(again, rows)
        self.assertEqual(len(self.executor.executed), 1)
        expected_key = (
            'joined_documents_[{"filters": {"author": "a"}, "foreign_key": "document_id", '
            '"select": ["version"], "table": "versions"}]_{"owner_id": "o1"}'
        )
        self.assertIn(expected_key, cache)

    async def test_join_without_select_keeps_whole_rows(self):
        cache = self._cache(executor=self.executor)
        rows = await cache.joined_read("documents", [Join("versions", "document_id")], filters={"owner_id": "o2"})
        self.assertEqual(rows, [{"id": "w3", "owner_id": "o2", "versions": []}])
        rows = await cache.joined_read("documents", [Join("versions", "document_id")], filters={"id": "w1"})
        self.assertEqual([version["id"] for version in rows[0]["versions"]], ["v1", "v2"])

    async def test_unknown_join_table_raises(self):
        cache = self._cache(executor=self.executor)
        with self.assertRaises(QueryExecutionError):
            await cache.joined_read("documents", [Join("signatures", "document_id")])
        self.assertEqual(len(cache), 0)


class TestDirectoryQueryExecutor(QueryCacheTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = DirectoryRemoteStore(self._tmp.name)
        for index in range(1, 4):
            await self.store.upsert_document(
                {"id": f"w{index}", "owner_id": "o1", "kind": "will", "version": 2, "updated_at": float(index)}
            )
        await self.store.upsert_document({"id": "x1", "owner_id": "o2", "kind": "will", "version": 2, "updated_at": 9.0})

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_pages_through_remote_records(self):
        cache = self._cache(executor=DirectoryQueryExecutor(self.store))
        first = await cache.paginated_read("documents", page_size=2, order_by="updated_at", filters={"owner_id": "o1"})
        self.assertEqual([row["id"] for row in first.rows], ["w3", "w2"])
        rest = await cache.paginated_read(
            "documents", page_size=2, order_by="updated_at", cursor=first.next_cursor, filters={"owner_id": "o1"}
        )
        self.assertEqual([row["id"] for row in rest.rows], ["w1"])
        self.assertFalse(rest.has_more)

    async def test_writes_are_refused(self):
        cache = self._cache(executor=DirectoryQueryExecutor(self.store))
        with self.assertRaises(BatchWriteError):
            await cache.batch_write("documents", [{"id": "w9"}])


class TestBatchWrite(QueryCacheTestCase):
    async def test_progress_after_each_chunk(self):
        executor = InMemoryQueryExecutor()
        cache = self._cache(executor=executor)
        progress = []
        written = await cache.batch_write(
            "audit",
            ({"n": index} for index in range(250)),
            batch_size=100,
            on_progress=lambda done, total: progress.append((done, total)),
        )
        self.assertEqual(written, 250)
        self.assertEqual(progress, [(100, 250), (200, 250), (250, 250)])
        self.assertEqual(len(executor.tables["audit"]), 250)

    async def test_failed_chunk_stops_the_write(self):
        executor = FailingInsertExecutor(fail_on_call=2)
        cache = self._cache(executor=executor)
        with self.assertLogs("stronghold_sync.cache.query_cache", level="ERROR"):
            with self.assertRaises(BatchWriteError) as caught:
                await cache.batch_write("audit", [{"n": index} for index in range(250)], batch_size=100)
        self.assertEqual((caught.exception.written, caught.exception.total), (100, 250))
        self.assertIsInstance(caught.exception.__cause__, QueryExecutionError)
        self.assertEqual(len(executor.tables["audit"]), 100)
        self.assertEqual(executor.insert_calls, 2)
        self.assertEqual(len(self.sink.errors), 1)

    async def test_empty_write(self):
        cache = self._cache(executor=InMemoryQueryExecutor())
        self.assertEqual(await cache.batch_write("audit", []), 0)


class TestSlowQueries(QueryCacheTestCase):
    async def test_slow_load_is_reported(self):
        cache = QueryCache(diagnostics=self.sink, clock=self.clock, timer=SteppingTimer(1.5))
        with self.assertLogs("stronghold_sync.cache.query_cache", level="WARNING"):
            await cache.get("k", CountingLoader(), query="SELECT * FROM wills")
        self.assertEqual(len(self.sink.slow), 1)
        record = self.sink.slow[0]
        self.assertEqual(record.query, "SELECT * FROM wills")
        self.assertAlmostEqual(record.duration_ms, 1500.0)
        self.assertTrue(record.stack_trace)

    async def test_fast_load_is_not_reported(self):
        cache = self._cache()
        await cache.get("k", CountingLoader())
        self.assertEqual(self.sink.slow, [])

    async def test_sink_failure_is_swallowed(self):
        cache = QueryCache(diagnostics=BrokenSink(), clock=self.clock, timer=SteppingTimer(2.0))
        with self.assertLogs("stronghold_sync.cache.query_cache", level="ERROR") as logs:
            self.assertEqual(await cache.get("k", CountingLoader()), "value-1")
        self.assertTrue(any("Failed to log slow query" in line for line in logs.output))

    def test_jsonl_sink_appends_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            sink = JsonlDiagnosticsSink(Path(tmp) / "diagnostics" / "slow.jsonl")
            sink.record_slow_query(SlowQueryRecord(query="q", duration_ms=1200.0, timestamp=1.0, stack_trace="st"))
            sink.record_error("batch write to audit", QueryExecutionError("boom"))
            lines = [json.loads(line) for line in sink.path.read_text().splitlines()]
        self.assertEqual([line["kind"] for line in lines], ["slow_query", "error"])
        self.assertEqual(lines[0]["duration_ms"], 1200.0)
        self.assertEqual(lines[1]["error"], "QueryExecutionError: boom")


class TestReporting(QueryCacheTestCase):
    async def test_empty_report(self):
        report = self._cache().get_performance_report()
        self.assertEqual(report.cache_stats.hit_rate, 100.0)
        self.assertEqual(report.query_stats.total_queries, 0)
        self.assertEqual(report.suggestions, [])

    async def test_low_hit_rate_suggests_caching(self):
        cache = self._cache()
        for key in ("a", "b", "c"):
            await cache.get(key, CountingLoader())
        await cache.get("a", CountingLoader())
        report = cache.get_performance_report()
        self.assertEqual(report.cache_stats.hit_rate, 25.0)
        self.assertEqual(report.cache_stats.top_keys[0], "a")
        self.assertEqual([(s.type, s.priority) for s in report.suggestions], [("caching", "high")])

    async def test_slow_and_large_queries_are_flagged(self):
        cache = QueryCache(diagnostics=self.sink, clock=self.clock, timer=SteppingTimer(1.2))
        await cache.get("big", CountingLoader(value=list(range(1500))))
        for _ in range(3):
            await cache.get("big", CountingLoader())
        report = cache.get_performance_report()
        self.assertEqual(report.query_stats.slow_queries, 1)
        self.assertAlmostEqual(report.query_stats.average_duration_ms, 300.0)
        self.assertEqual(
            [suggestion.type for suggestion in report.suggestions],
            ["index", "pagination"],
        )

    async def test_stats_invalidate_and_clear(self):
        cache = self._cache()
        await cache.get("a", CountingLoader())
        self.clock.now = 3.0
        await cache.get("a", CountingLoader())
        await cache.get("b", CountingLoader())
        stats = cache.get_cache_stats()
        self.assertEqual(stats["size"], 2)
        self.assertEqual(stats["metrics"]["a"], {"hits": 1, "last_access": 3.0})

        self.assertTrue(cache.invalidate("a"))
        self.assertFalse(cache.invalidate("a"))
        cache.clear_cache()
        self.assertEqual(len(cache), 0)


class TestBuildQueryCache(unittest.TestCase):
    def test_settings_block_is_applied(self):
        block = config.CacheBlock(ttl_ms=5000, max_size=10, strategy="fifo", slow_query_ms=200)
        cache = build_query_cache(block)
        self.assertEqual(cache.config, CacheConfig(ttl_ms=5000, max_size=10, strategy=EvictionStrategy.FIFO))
        self.assertEqual(cache.slow_query_ms, 200)

    def test_diagnostics_dir_uses_jsonl_sink(self):
        with tempfile.TemporaryDirectory() as tmp:
            cache = build_query_cache(config.CacheBlock(), diagnostics_dir=Path(tmp))
            self.assertIsInstance(cache.diagnostics, JsonlDiagnosticsSink)
            self.assertEqual(cache.diagnostics.path, Path(tmp) / "slow_queries.jsonl")


if __name__ == "__main__":
    unittest.main()
