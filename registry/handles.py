"""Uniform dataset handles over the three storage tiers.

Every handle offers the same capability set regardless of backend:

- ``scan``: stream record batches, optionally projected and limited
- ``filter``/``where``: lazy predicate pushdown returning a new handle
- ``aggregate``: count/sum/mean/min/max with an optional group-by
- ``collect``: materialize into a ``pyarrow.Table``

Arrow-backed handles evaluate predicates batch by batch with
``pyarrow.compute``; the SQLite handle translates them into a ``WHERE`` clause.
"""

from __future__ import annotations

import random
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from functools import partial
from pathlib import Path
from typing import TypeAlias, cast

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.ipc as pa_ipc

from explorer_core.errors import ValidationError
from explorer_core.schemas import Backend, ColumnInfo, DatasetRef

from . import database

DEFAULT_BATCH_ROWS = 65_536

Predicate: TypeAlias = tuple[str, str, object]
Aggregation: TypeAlias = tuple[str, str, str]
AggregationInput: TypeAlias = Mapping[str, str | Sequence[str]] | Sequence[Sequence[str]]

COMPARISON_OPS = ("==", "!=", "<", "<=", ">", ">=")
SET_OPS = ("in", "not in")
NULL_OPS = ("is null", "is not null")

AGGREGATE_FUNCTIONS = ("count", "sum", "mean", "min", "max")

_OP_ALIASES = {"=": "==", "<>": "!=", "isnull": "is null", "notnull": "is not null"}

_SQL_COMPARISONS = {"==": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_SQL_FUNCTIONS = {"count": "COUNT", "sum": "SUM", "mean": "AVG", "min": "MIN", "max": "MAX"}

_ROW_MARKER = "__row_marker"


def normalize_predicates(
    predicates: Sequence[Sequence[object]], columns: Sequence[str]
) -> tuple[Predicate, ...]:
    normalized: list[Predicate] = []
    for item in predicates:
        if isinstance(item, str) or len(item) not in (2, 3):
            raise ValidationError(f"Predicate must be (column, op[, value]): {item!r}")
        column = str(item[0])
        op = " ".join(str(item[1]).lower().split())
        op = _OP_ALIASES.get(op, op)
        value = item[2] if len(item) == 3 else None
        if column not in columns:
            raise ValidationError(f"Unknown column in predicate: {column}")
        if op in SET_OPS:
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise ValidationError(f"Operator '{op}' needs a list of values")
            value = list(value)
        elif op in COMPARISON_OPS:
            if value is None:
                raise ValidationError(f"Operator '{op}' needs a value; use 'is null' for nulls")
        elif op not in NULL_OPS:
            raise ValidationError(f"Unsupported predicate operator: {op}")
        normalized.append((column, op, value))
    return tuple(normalized)


def normalize_aggregations(
    aggregations: AggregationInput, columns: Sequence[str]
) -> list[Aggregation]:
    """Return (column, function, output_name) triples.

    Output names follow ``<column>_<function>``; ``("*", "count")`` yields
    ``count``.
    """
    pairs: list[tuple[str, str]] = []
    if isinstance(aggregations, Mapping):
        for column, functions in aggregations.items():
            if isinstance(functions, str):
                pairs.append((str(column), functions))
            else:
                pairs.extend((str(column), str(fn)) for fn in functions)
    else:
        for item in aggregations:
            if isinstance(item, str) or len(item) != 2:
                raise ValidationError(f"Aggregation must be (column, function): {item!r}")
            pairs.append((str(item[0]), str(item[1])))
    if not pairs:
        raise ValidationError("At least one aggregation is required")

    seen: set[str] = set()
    result: list[Aggregation] = []
    for column, function in pairs:
        fn = function.lower()
        if fn == "avg":
            fn = "mean"
        if fn not in AGGREGATE_FUNCTIONS:
            raise ValidationError(f"Unsupported aggregate function: {function}")
        if column == "*":
            if fn != "count":
                raise ValidationError("Only count accepts '*'")
            output = "count"
        elif column not in columns:
            raise ValidationError(f"Unknown column in aggregation: {column}")
        else:
            output = f"{column}_{fn}"
        if output not in seen:
            seen.add(output)
            result.append((column, fn, output))
    return result


def relational_arrow_type(type_name: str) -> pa.DataType:
    """Arrow type a value of ``type_name`` comes back as after a SQLite round trip."""
    lowered = type_name.lower()
    if lowered.startswith(("int", "uint")):
        return pa.int64()
    if lowered.startswith(("float", "double", "halffloat", "decimal")):
        return pa.float64()
    if lowered == "bool":
        return pa.bool_()
    if lowered in ("binary", "large_binary"):
        return pa.binary()
    return pa.string()


def _sqlite_array(values: Sequence[object], arrow_type: pa.DataType) -> pa.Array:
    if pa.types.is_boolean(arrow_type):
        return pa.array([None if v is None else bool(v) for v in values], type=arrow_type)
    if pa.types.is_string(arrow_type):
        return pa.array([None if v is None else str(v) for v in values], type=arrow_type)
    if pa.types.is_floating(arrow_type):
        return pa.array(
            [None if v is None else float(cast(float, v)) for v in values], type=arrow_type
        )
    return pa.array(list(values), type=arrow_type)


def column_infos_from_schema(schema: pa.Schema) -> list[ColumnInfo]:
    return [ColumnInfo(name=field.name, type=str(field.type)) for field in schema]


class DatasetHandle(ABC):
    """Backend-independent view of one dataset, optionally filtered."""

    backend: Backend

    def __init__(self, name: str, predicates: Sequence[Predicate] = ()) -> None:
        self.name: str = name
        self.predicates: tuple[Predicate, ...] = tuple(predicates)

    @property
    @abstractmethod
    def arrow_schema(self) -> pa.Schema:
        """Schema of the batches produced by ``scan``."""

    @property
    def columns(self) -> list[str]:
        return list(self.arrow_schema.names)

    @property
    def schema(self) -> dict[str, str]:
        return {column.name: column.type for column in self.column_infos}

    @property
    def column_infos(self) -> list[ColumnInfo]:
        return column_infos_from_schema(self.arrow_schema)

    @property
    def row_count(self) -> int:
        return self.count()

    @abstractmethod
    def scan(
        self,
        columns: Sequence[str] | None = None,
        batch_size: int = DEFAULT_BATCH_ROWS,
        limit: int | None = None,
    ) -> Iterator[pa.RecordBatch]:
        """Yield record batches after predicates, projection and limit."""

    @abstractmethod
    def _with_predicates(self, predicates: tuple[Predicate, ...]) -> "DatasetHandle":
        """Return a copy of this handle with a different predicate list."""

    @abstractmethod
    def count(self) -> int:
        """Number of rows matching the handle's predicates."""

    def filter(self, *predicates: Sequence[object]) -> "DatasetHandle":
        added = normalize_predicates(predicates, self.columns)
        return self._with_predicates(self.predicates + added)

    def where(self, column: str, op: str, value: object = None) -> "DatasetHandle":
        return self.filter((column, op, value))

    def _projected_schema(self, columns: Sequence[str] | None) -> pa.Schema:
        if columns is None:
            return self.arrow_schema
        unknown = [column for column in columns if column not in self.columns]
        if unknown:
            raise ValidationError(f"Unknown columns: {', '.join(unknown)}")
        return pa.schema([self.arrow_schema.field(column) for column in columns])

    def collect(
        self, columns: Sequence[str] | None = None, limit: int | None = None
    ) -> pa.Table:
        schema = self._projected_schema(columns)
        batches = list(self.scan(columns=columns, limit=limit))
        return pa.Table.from_batches(batches, schema=schema)

    def head(self, n: int = 5) -> pa.Table:
        return self.collect(limit=n)

    def to_pylist(self, limit: int | None = None) -> list[dict[str, object]]:
        return cast(list[dict[str, object]], self.collect(limit=limit).to_pylist())

    def aggregate(
        self,
        aggregations: AggregationInput,
        group_by: Sequence[str] | str | None = None,
    ) -> pa.Table:
        keys = [group_by] if isinstance(group_by, str) else list(group_by or [])
        unknown = [key for key in keys if key not in self.columns]
        if unknown:
            raise ValidationError(f"Unknown group-by columns: {', '.join(unknown)}")
        specs = normalize_aggregations(aggregations, self.columns)
        needed = list(dict.fromkeys(keys + [column for column, _, _ in specs if column != "*"]))
        table = self.collect(columns=needed) if needed else self._row_frame()
        return aggregate_table(table, specs, keys)

    def _row_frame(self) -> pa.Table:
        rows = self.count()
        return pa.table({_ROW_MARKER: pa.array([1] * rows, type=pa.int64())})

    def sample(self, n: int = 10, seed: int | None = None) -> pa.Table:
        table = self.collect()
        if table.num_rows <= n:
            return table
        indices = sorted(random.Random(seed).sample(range(table.num_rows), n))
        return table.take(pa.array(indices, type=pa.int64()))

    def summary(self) -> pa.Table:
        """Per-column type, null count and numeric min/mean/max."""
        table = self.collect()
        rows: dict[str, list[object]] = {
            "column": [],
            "type": [],
            "nulls": [],
            "min": [],
            "mean": [],
            "max": [],
        }
        for field in table.schema:
            array = table.column(field.name)
            numeric = pa.types.is_integer(field.type) or pa.types.is_floating(field.type)
            rows["column"].append(field.name)
            rows["type"].append(str(field.type))
            rows["nulls"].append(array.null_count)
            rows["min"].append(pc.min(array).as_py() if numeric else None)
            rows["mean"].append(pc.mean(array).as_py() if numeric else None)
            rows["max"].append(pc.max(array).as_py() if numeric else None)
        return pa.table(
            {
                "column": pa.array(rows["column"], type=pa.string()),
                "type": pa.array(rows["type"], type=pa.string()),
                "nulls": pa.array(rows["nulls"], type=pa.int64()),
                "min": pa.array(rows["min"], type=pa.float64()),
                "mean": pa.array(rows["mean"], type=pa.float64()),
                "max": pa.array(rows["max"], type=pa.float64()),
            }
        )

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        filtered = f", {len(self.predicates)} predicate(s)" if self.predicates else ""
        return (
            f"<{self.__class__.__name__} {self.name!r} backend={self.backend.value} "
            f"columns={len(self.columns)}{filtered}>"
        )


_ARROW_COMPARISONS: dict[str, Callable[..., pa.Array]] = {
    "==": pc.equal,
    "!=": pc.not_equal,
    "<": pc.less,
    "<=": pc.less_equal,
    ">": pc.greater,
    ">=": pc.greater_equal,
}

_ARROW_REDUCERS: dict[str, Callable[..., pa.Scalar]] = {
    "count": pc.count,
    "sum": pc.sum,
    "mean": pc.mean,
    "min": pc.min,
    "max": pc.max,
}


def _predicate_mask(batch: pa.RecordBatch, predicate: Predicate) -> pa.Array:
    column, op, value = predicate
    array = batch.column(batch.schema.get_field_index(column))
    try:
        if op in _ARROW_COMPARISONS:
            return _ARROW_COMPARISONS[op](array, value)
        if op == "is null":
            return pc.is_null(array)
        if op == "is not null":
            return pc.is_valid(array)
        value_set = pa.array(cast(list[object], value), type=array.type)
        matches = pc.is_in(array, value_set=value_set)
        if op == "in":
            return matches
        return pc.and_(pc.invert(matches), pc.is_valid(array))
    except (pa.ArrowInvalid, pa.ArrowNotImplementedError, pa.ArrowTypeError) as exc:
        raise ValidationError(f"Cannot apply '{op}' to column {column}: {exc}") from exc


def filter_batch(batch: pa.RecordBatch, predicates: Sequence[Predicate]) -> pa.RecordBatch:
    if not predicates:
        return batch
    mask = _predicate_mask(batch, predicates[0])
    for predicate in predicates[1:]:
        mask = pc.and_(mask, _predicate_mask(batch, predicate))
    return batch.filter(mask)


def _project(batch: pa.RecordBatch, columns: Sequence[str] | None) -> pa.RecordBatch:
    if columns is None:
        return batch
    arrays = [batch.column(batch.schema.get_field_index(column)) for column in columns]
    return pa.RecordBatch.from_arrays(arrays, names=list(columns))


def aggregate_table(table: pa.Table, specs: Sequence[Aggregation], keys: Sequence[str]) -> pa.Table:
    """Aggregate an Arrow table, ordering grouped output by the group keys."""
    if not keys:
        values: dict[str, list[object]] = {}
        for column, fn, output in specs:
            if column == "*":
                values[output] = [table.num_rows]
            else:
                values[output] = [_ARROW_REDUCERS[fn](table.column(column)).as_py()]
        return pa.table(values)

    if _ROW_MARKER not in table.column_names:
        table = table.append_column(_ROW_MARKER, pa.array([1] * table.num_rows, type=pa.int64()))
    arrow_specs = [(_ROW_MARKER, "sum") if column == "*" else (column, fn) for column, fn, _ in specs]
    grouped = table.group_by(list(keys)).aggregate(arrow_specs)
    arrow_names = [f"{column}_{fn}" for column, fn in arrow_specs]
    result = grouped.select(list(keys) + arrow_names)
    result = result.rename_columns(list(keys) + [output for _, _, output in specs])
    return result.sort_by([(key, "ascending") for key in keys])


class _ArrowHandle(DatasetHandle):
    """Shared scan logic for tiers that hold Arrow record batches."""

    @abstractmethod
    def _raw_batches(self, batch_size: int) -> Iterator[pa.RecordBatch]:
        """Yield unfiltered batches in storage order."""

    def scan(
        self,
        columns: Sequence[str] | None = None,
        batch_size: int = DEFAULT_BATCH_ROWS,
        limit: int | None = None,
    ) -> Iterator[pa.RecordBatch]:
        projected = list(self._projected_schema(columns).names) if columns is not None else None
        remaining = limit
        if remaining is not None and remaining <= 0:
            return
        for raw in self._raw_batches(batch_size):
            batch = _project(filter_batch(raw, self.predicates), projected)
            if batch.num_rows == 0:
                continue
            if remaining is not None:
                if batch.num_rows >= remaining:
                    yield batch.slice(0, remaining)
                    return
                remaining -= batch.num_rows
            yield batch

    def count(self) -> int:
        if not self.predicates:
            return self._stored_rows()
        return sum(
            filter_batch(batch, self.predicates).num_rows
            for batch in self._raw_batches(DEFAULT_BATCH_ROWS)
        )

    @abstractmethod
    def _stored_rows(self) -> int:
        """Row count before predicates."""


class ArrowTableHandle(_ArrowHandle):
    """In-memory tier: a resident ``pyarrow.Table``."""

    backend = Backend.MEMORY

    def __init__(self, name: str, table: pa.Table, predicates: Sequence[Predicate] = ()) -> None:
        super().__init__(name, predicates)
        self._table: pa.Table = table

    @property
    def arrow_schema(self) -> pa.Schema:
        return self._table.schema

    def _raw_batches(self, batch_size: int) -> Iterator[pa.RecordBatch]:
        return iter(self._table.to_batches(max_chunksize=batch_size))

    def _stored_rows(self) -> int:
        return self._table.num_rows

    def _with_predicates(self, predicates: tuple[Predicate, ...]) -> "ArrowTableHandle":
        return ArrowTableHandle(self.name, self._table, predicates)

    def collect(
        self, columns: Sequence[str] | None = None, limit: int | None = None
    ) -> pa.Table:
        if not self.predicates and columns is None and limit is None:
            return self._table
        return super().collect(columns=columns, limit=limit)


class MappedArrowHandle(_ArrowHandle):
    """Columnar tier: an Arrow IPC file read through a memory map."""

    backend = Backend.COLUMNAR

    def __init__(
        self,
        name: str,
        path: str | Path,
        row_count: int | None = None,
        predicates: Sequence[Predicate] = (),
    ) -> None:
        super().__init__(name, predicates)
        self.path: Path = Path(path)
        self._reader: pa_ipc.RecordBatchFileReader = pa_ipc.open_file(
            pa.memory_map(str(self.path), "r")
        )
        self._row_count: int | None = row_count

    @property
    def arrow_schema(self) -> pa.Schema:
        return self._reader.schema

    def _raw_batches(self, batch_size: int) -> Iterator[pa.RecordBatch]:
        for index in range(self._reader.num_record_batches):
            batch = self._reader.get_batch(index)
            for offset in range(0, batch.num_rows, batch_size):
                yield batch.slice(offset, batch_size)

    def _stored_rows(self) -> int:
        if self._row_count is None:
            self._row_count = sum(
                self._reader.get_batch(index).num_rows
                for index in range(self._reader.num_record_batches)
            )
        return self._row_count

    def _with_predicates(self, predicates: tuple[Predicate, ...]) -> "MappedArrowHandle":
        return MappedArrowHandle(self.name, self.path, self._row_count, predicates)


class SqliteHandle(DatasetHandle):
    """Relational tier: a SQLite table read through short-lived connections."""

    backend = Backend.RELATIONAL

    def __init__(
        self,
        name: str,
        table: str,
        columns: Sequence[ColumnInfo],
        connect: Callable[[], sqlite3.Connection],
        row_count: int | None = None,
        predicates: Sequence[Predicate] = (),
    ) -> None:
        super().__init__(name, predicates)
        self.table: str = table
        self._declared: list[ColumnInfo] = list(columns)
        self._connect: Callable[[], sqlite3.Connection] = connect
        self._row_count: int | None = row_count
        self._schema: pa.Schema = pa.schema(
            [(column.name, relational_arrow_type(column.type)) for column in self._declared]
        )

    @property
    def arrow_schema(self) -> pa.Schema:
        return self._schema

    @property
    def column_infos(self) -> list[ColumnInfo]:
        return list(self._declared)

    def _with_predicates(self, predicates: tuple[Predicate, ...]) -> "SqliteHandle":
        return SqliteHandle(
            self.name, self.table, self._declared, self._connect, self._row_count, predicates
        )

    def _where(self) -> tuple[str, list[object]]:
        clauses: list[str] = []
        params: list[object] = []
        for column, op, value in self.predicates:
            quoted = database.quote_identifier(column)
            if op in _SQL_COMPARISONS:
                clauses.append(f"{quoted} {_SQL_COMPARISONS[op]} ?")
                params.append(database.to_sqlite_value(value))
            elif op == "is null":
                clauses.append(f"{quoted} IS NULL")
            elif op == "is not null":
                clauses.append(f"{quoted} IS NOT NULL")
            else:
                values = [database.to_sqlite_value(item) for item in cast(list[object], value)]
                placeholders = ", ".join("?" for _ in values)
                if op == "in":
                    clauses.append(f"{quoted} IN ({placeholders})" if values else "0")
                elif values:
                    clauses.append(f"({quoted} NOT IN ({placeholders}) AND {quoted} IS NOT NULL)")
                else:
                    clauses.append(f"{quoted} IS NOT NULL")
                params.extend(values)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _fetch(self, sql: str, params: Sequence[object]) -> tuple[list[str], list[tuple[object, ...]]]:
        connection = self._connect()
        try:
            return database.fetch_all(connection, sql, params)
        finally:
            connection.close()

    def scan(
        self,
        columns: Sequence[str] | None = None,
        batch_size: int = DEFAULT_BATCH_ROWS,
        limit: int | None = None,
    ) -> Iterator[pa.RecordBatch]:
        schema = self._projected_schema(columns)
        select = ", ".join(database.quote_identifier(name) for name in schema.names)
        where, params = self._where()
        sql = f"SELECT {select} FROM {database.quote_identifier(self.table)}{where}"
        if limit is not None:
            sql += f" LIMIT {max(int(limit), 0)}"
        connection = self._connect()
        try:
            cursor = connection.execute(sql, tuple(params))
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                values = list(zip(*rows))
                arrays = [
                    _sqlite_array(values[index], field.type) for index, field in enumerate(schema)
                ]
                yield pa.RecordBatch.from_arrays(arrays, schema=schema)
        finally:
            connection.close()

    def count(self) -> int:
        if not self.predicates and self._row_count is not None:
            return self._row_count
        where, params = self._where()
        _, rows = self._fetch(
            f"SELECT COUNT(*) FROM {database.quote_identifier(self.table)}{where}", params
        )
        return int(cast(int, rows[0][0]))

    def aggregate(
        self,
        aggregations: AggregationInput,
        group_by: Sequence[str] | str | None = None,
    ) -> pa.Table:
        keys = [group_by] if isinstance(group_by, str) else list(group_by or [])
        unknown = [key for key in keys if key not in self.columns]
        if unknown:
            raise ValidationError(f"Unknown group-by columns: {', '.join(unknown)}")
        specs = normalize_aggregations(aggregations, self.columns)
        quoted_keys = [database.quote_identifier(key) for key in keys]
        parts = list(quoted_keys)
        for column, fn, output in specs:
            target = "*" if column == "*" else database.quote_identifier(column)
            parts.append(f"{_SQL_FUNCTIONS[fn]}({target}) AS {database.quote_identifier(output)}")
        where, params = self._where()
        sql = f"SELECT {', '.join(parts)} FROM {database.quote_identifier(self.table)}{where}"
        if keys:
            key_list = ", ".join(quoted_keys)
            sql += f" GROUP BY {key_list} ORDER BY {key_list}"
        names, rows = self._fetch(sql, params)
        values = list(zip(*rows)) if rows else [() for _ in names]
        return pa.table({name: list(values[index]) for index, name in enumerate(names)})

    def sample(self, n: int = 10, seed: int | None = None) -> pa.Table:
        if seed is not None:
            return super().sample(n, seed)
        return self._random_rows(n)

    def _random_rows(self, n: int) -> pa.Table:
        select = ", ".join(database.quote_identifier(name) for name in self.columns)
        where, params = self._where()
        sql = (
            f"SELECT {select} FROM {database.quote_identifier(self.table)}{where} "
            f"ORDER BY RANDOM() LIMIT {max(int(n), 0)}"
        )
        _, rows = self._fetch(sql, params)
        values = list(zip(*rows)) if rows else [() for _ in self.columns]
        arrays = [_sqlite_array(values[index], field.type) for index, field in enumerate(self._schema)]
        return pa.Table.from_arrays(arrays, schema=self._schema)


def open_handle(ref: DatasetRef) -> DatasetHandle:
    """Rebind a dataset from its serialized reference (used inside workers)."""
    if ref.backend == Backend.MEMORY:
        table = pa_ipc.open_file(pa.memory_map(ref.location, "r")).read_all()
        return ArrowTableHandle(ref.name, table)
    if ref.backend == Backend.COLUMNAR:
        return MappedArrowHandle(ref.name, ref.location, ref.row_count)
    return SqliteHandle(
        ref.name,
        ref.table or ref.name,
        ref.columns,
        partial(database.connect_readonly, ref.location),
        ref.row_count,
    )
