"""Value types shared by the query cache components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EvictionStrategy(str, Enum):
    LRU = "lru"
    FIFO = "fifo"
    LFU = "lfu"


@dataclass(frozen=True)
class CacheConfig:
    ttl_ms: int = 300_000
    max_size: int = 1000
    strategy: EvictionStrategy = EvictionStrategy.LRU

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", EvictionStrategy(self.strategy))
        if self.ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive.")
        if self.max_size <= 0:
            raise ValueError("max_size must be positive.")


@dataclass
class CacheEntry:
    key: str
    value: Any
    expiry: float
    hits: int = 0
    last_access: float = 0.0
    # Monotonic access counter; orders accesses that share a clock reading.
    access_seq: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expiry


@dataclass(frozen=True)
class QueryMetric:
    query: str
    duration_ms: float
    row_count: int
    cache_hit: bool
    timestamp: float


@dataclass(frozen=True)
class SlowQueryRecord:
    query: str
    duration_ms: float
    timestamp: float
    stack_trace: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "stack_trace": self.stack_trace,
        }


@dataclass(frozen=True)
class OptimizationSuggestion:
    type: str
    priority: str
    description: str
    impact: str
    implementation: str


@dataclass(frozen=True)
class CacheStats:
    hit_rate: float
    size: int
    top_keys: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class QueryStats:
    average_duration_ms: float
    slow_queries: int
    total_queries: int


@dataclass(frozen=True)
class PerformanceReport:
    cache_stats: CacheStats
    query_stats: QueryStats
    suggestions: List[OptimizationSuggestion] = field(default_factory=list)


@dataclass(frozen=True)
class Page:
    """One page of a cursor-paginated read."""

    rows: List[Dict[str, Any]]
    next_cursor: Optional[Any]
    has_more: bool
    total_count: Optional[int] = None


__all__ = [
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "EvictionStrategy",
    "OptimizationSuggestion",
    "Page",
    "PerformanceReport",
    "QueryMetric",
    "QueryStats",
    "SlowQueryRecord",
]
