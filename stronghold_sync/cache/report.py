"""Summaries of recorded query metrics and rule-of-thumb tuning advice."""

from __future__ import annotations

from typing import Iterable, List, Mapping, Sequence

from stronghold_sync.cache.models import (
    CacheEntry,
    CacheStats,
    OptimizationSuggestion,
    PerformanceReport,
    QueryMetric,
    QueryStats,
)

LOW_HIT_RATE_PERCENT = 60.0
HIGH_SLOW_QUERY_PERCENT = 10.0
LARGE_RESULT_ROWS = 1000.0
TOP_KEY_COUNT = 5


def hit_rate(metrics: Sequence[QueryMetric]) -> float:
    """Percentage of recorded reads served from cache; 100 with nothing recorded."""
    if not metrics:
        return 100.0
    return sum(1 for metric in metrics if metric.cache_hit) / len(metrics) * 100


def slow_query_rate(metrics: Sequence[QueryMetric], threshold_ms: float) -> float:
    if not metrics:
        return 0.0
    return _slow_count(metrics, threshold_ms) / len(metrics) * 100


def average_row_count(metrics: Sequence[QueryMetric]) -> float:
    if not metrics:
        return 0.0
    return sum(metric.row_count for metric in metrics) / len(metrics)


def suggest(metrics: Sequence[QueryMetric], threshold_ms: float) -> List[OptimizationSuggestion]:
    suggestions: List[OptimizationSuggestion] = []
    if hit_rate(metrics) < LOW_HIT_RATE_PERCENT:
        suggestions.append(
            OptimizationSuggestion(
                type="caching",
                priority="high",
                description="Low cache hit rate detected",
                impact="Improve response times by 2-5x",
                implementation="Review caching strategy and increase cache TTL for stable data",
            )
        )
    if slow_query_rate(metrics, threshold_ms) > HIGH_SLOW_QUERY_PERCENT:
        suggestions.append(
            OptimizationSuggestion(
                type="index",
                priority="critical",
                description="High percentage of slow queries",
                impact="Reduce query time by 10-100x",
                implementation="Add database indexes on frequently filtered columns",
            )
        )
    if average_row_count(metrics) > LARGE_RESULT_ROWS:
        suggestions.append(
            OptimizationSuggestion(
                type="pagination",
                priority="medium",
                description="Large result sets detected",
                impact="Reduce memory usage and improve initial load time",
                implementation="Implement cursor-based pagination for large datasets",
            )
        )
    return suggestions


def build_report(
    metrics: Sequence[QueryMetric],
    entries: Mapping[str, CacheEntry],
    threshold_ms: float,
) -> PerformanceReport:
    total = len(metrics)
    average = sum(metric.duration_ms for metric in metrics) / total if total else 0.0
    return PerformanceReport(
        cache_stats=CacheStats(
            hit_rate=hit_rate(metrics),
            size=len(entries),
            top_keys=top_keys(entries.values()),
        ),
        query_stats=QueryStats(
            average_duration_ms=average,
            slow_queries=_slow_count(metrics, threshold_ms),
            total_queries=total,
        ),
        suggestions=suggest(metrics, threshold_ms),
    )


def top_keys(entries: Iterable[CacheEntry], limit: int = TOP_KEY_COUNT) -> List[str]:
    # sorted() is stable, so equal hit counts keep insertion order.
    ranked = sorted(entries, key=lambda entry: entry.hits, reverse=True)
    return [entry.key for entry in ranked[:limit]]


def _slow_count(metrics: Sequence[QueryMetric], threshold_ms: float) -> int:
    return sum(1 for metric in metrics if metric.duration_ms > threshold_ms)


__all__ = [
    "average_row_count",
    "build_report",
    "hit_rate",
    "slow_query_rate",
    "suggest",
    "top_keys",
]
