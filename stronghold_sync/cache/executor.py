"""Remote query executor interface plus in-memory and directory-backed implementations."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from stronghold_sync.engine.remote import DirectoryRemoteStore

logger = logging.getLogger(__name__)

AGGREGATE_FUNCTIONS = ("sum", "count", "avg", "max", "min")


class QueryExecutionError(RuntimeError):
    """Raised when a query or insert cannot be executed."""


@dataclass(frozen=True)
class Aggregation:
    """Grouped aggregates; each function maps to the columns it applies to."""

    group_by: Tuple[str, ...] = ()
    sum: Tuple[str, ...] = ()
    count: Tuple[str, ...] = ()
    avg: Tuple[str, ...] = ()
    max: Tuple[str, ...] = ()
    min: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, List[str]]:
        names = ("group_by",) + AGGREGATE_FUNCTIONS
        return {name: list(getattr(self, name)) for name in names if getattr(self, name)}

    def columns(self) -> List[str]:
        return [f"{func}_{column}" for func in AGGREGATE_FUNCTIONS for column in getattr(self, func)]


@dataclass(frozen=True)
class Join:
    """Rows of ``table`` whose ``foreign_key`` points at the main row's ``id``."""

    table: str
    foreign_key: str
    select: Optional[Tuple[str, ...]] = None
    filters: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"table": self.table, "foreign_key": self.foreign_key}
        if self.select is not None:
            payload["select"] = list(self.select)
        if self.filters:
            payload["filters"] = dict(self.filters)
        return payload


@dataclass(frozen=True)
class Query:
    """Opaque description of a remote read."""

    source: str
    filters: Mapping[str, Any] = field(default_factory=dict)
    order_by: Optional[str] = None
    descending: bool = True
    limit: Optional[int] = None
    cursor: Optional[Any] = None
    aggregation: Optional[Aggregation] = None
    joins: Tuple[Join, ...] = ()

    def describe(self) -> str:
        selected = ["*"]
        if self.aggregation is not None:
            selected = list(self.aggregation.group_by) + [
                f"{func.upper()}({column})"
                for func in AGGREGATE_FUNCTIONS
                for column in getattr(self.aggregation, func)
            ]
        for join in self.joins:
            columns = ", ".join(join.select) if join.select else "*"
            selected.append(f"{join.table}({columns})")
        parts = [f"SELECT {', '.join(selected)} FROM {self.source}"]
        conditions = [f"{name} = {value!r}" for name, value in sorted(self.filters.items())]
        if self.cursor is not None and self.order_by:
            conditions.append(f"{self.order_by} {'<' if self.descending else '>'} {self.cursor!r}")
        if conditions:
            parts.append("WHERE " + " AND ".join(conditions))
        if self.aggregation is not None and self.aggregation.group_by:
            parts.append("GROUP BY " + ", ".join(self.aggregation.group_by))
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by} {'DESC' if self.descending else 'ASC'}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        return " ".join(parts)


@dataclass(frozen=True)
class QueryResult:
    rows: List[Dict[str, Any]]
    total_count: Optional[int] = None

    def __len__(self) -> int:
        return len(self.rows)


class QueryExecutor(Protocol):
    async def execute(self, query: Query) -> QueryResult:
        ...

    async def insert(self, destination: str, rows: Sequence[Mapping[str, Any]]) -> None:
        ...


class InMemoryQueryExecutor:
    """Tables of dict rows held in memory; supports equality filters and a cursor bound."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables) if tables else {}
        self.executed: List[Query] = []

    async def execute(self, query: Query) -> QueryResult:
        self.executed.append(query)
        if query.source not in self.tables:
            raise QueryExecutionError(f"Unknown table '{query.source}'.")
        for join in query.joins:
            if join.table not in self.tables:
                raise QueryExecutionError(f"Unknown table '{join.table}'.")
        return run_query(query, self.tables[query.source], self.tables)

    async def insert(self, destination: str, rows: Sequence[Mapping[str, Any]]) -> None:
        table = self.tables.setdefault(destination, [])
        table.extend(copy.deepcopy(dict(row)) for row in rows)
        logger.debug("Inserted %d row(s) into %s.", len(rows), destination)


class DirectoryQueryExecutor:
    """Read-only queries over the records of a :class:`DirectoryRemoteStore`.

    Each source names a record directory (``documents`` or ``devices``).
    """

    def __init__(self, store: DirectoryRemoteStore) -> None:
        self._store = store

    async def execute(self, query: Query) -> QueryResult:
        tables = {query.source: await self._store.list_records(query.source)}
        for join in query.joins:
            if join.table not in tables:
                tables[join.table] = await self._store.list_records(join.table)
        return run_query(query, tables[query.source], tables)

    async def insert(self, destination: str, rows: Sequence[Mapping[str, Any]]) -> None:
        raise QueryExecutionError(f"{self._store.root} is read-only through the query executor.")


def run_query(
    query: Query,
    rows: Sequence[Mapping[str, Any]],
    tables: Mapping[str, Sequence[Mapping[str, Any]]],
) -> QueryResult:
    """Apply ``query`` to ``rows``: filter, cursor bound, joins, then grouping or ordering."""
    selected = [dict(row) for row in rows if _matches(row, query.filters)]
    if query.cursor is not None and query.order_by:
        selected = [row for row in selected if _beyond_cursor(row.get(query.order_by), query.cursor, query.descending)]
    for join in query.joins:
        related = [row for row in tables.get(join.table, []) if _matches(row, join.filters)]
        for row in selected:
            row[join.table] = [
                _project(candidate, join.select)
                for candidate in related
                if candidate.get(join.foreign_key) == row.get("id")
            ]
    if query.aggregation is not None:
        selected = aggregate(selected, query.aggregation)
    total = len(selected)
    if query.order_by:
        present = [row for row in selected if row.get(query.order_by) is not None]
        missing = [row for row in selected if row.get(query.order_by) is None]
        present.sort(key=lambda row: row[query.order_by], reverse=query.descending)
        selected = present + missing
    if query.limit is not None:
        selected = selected[: query.limit]
    return QueryResult(rows=copy.deepcopy(selected), total_count=total)


def aggregate(rows: Sequence[Mapping[str, Any]], aggregation: Aggregation) -> List[Dict[str, Any]]:
    """Group ``rows`` in first-seen order and compute ``<func>_<column>`` values per group."""
    groups: Dict[Tuple[Any, ...], List[Mapping[str, Any]]] = {}
    for row in rows:
        key = tuple(row.get(column) for column in aggregation.group_by)
        groups.setdefault(key, []).append(row)
    if not groups and not aggregation.group_by:
        groups[()] = []

    results: List[Dict[str, Any]] = []
    for key, members in groups.items():
        result: Dict[str, Any] = dict(zip(aggregation.group_by, key))
        for func in AGGREGATE_FUNCTIONS:
            for column in getattr(aggregation, func):
                values = [row[column] for row in members if row.get(column) is not None]
                result[f"{func}_{column}"] = _apply(func, values)
        results.append(result)
    return results


def _apply(func: str, values: List[Any]) -> Any:
    if func == "count":
        return len(values)
    if func == "sum":
        return sum(values)
    if not values:
        return None
    if func == "avg":
        return sum(values) / len(values)
    if func == "max":
        return max(values)
    return min(values)


def _project(row: Mapping[str, Any], select: Optional[Sequence[str]]) -> Dict[str, Any]:
    if select is None:
        return copy.deepcopy(dict(row))
    return {column: copy.deepcopy(row.get(column)) for column in select}


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(row.get(name) == value for name, value in filters.items())


def _beyond_cursor(value: Any, cursor: Any, descending: bool) -> bool:
    if value is None:
        return False
    return value < cursor if descending else value > cursor


__all__ = [
    "AGGREGATE_FUNCTIONS",
    "Aggregation",
    "DirectoryQueryExecutor",
    "InMemoryQueryExecutor",
    "Join",
    "Query",
    "QueryExecutionError",
    "QueryExecutor",
    "QueryResult",
    "aggregate",
    "run_query",
]
