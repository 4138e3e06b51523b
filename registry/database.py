"""
SQLite utilities for the relational tier.
"""

from __future__ import annotations

import datetime as dt
import decimal
import sqlite3
from collections.abc import Iterable, Sequence
from pathlib import Path

import pyarrow as pa


def connect(db_path: str) -> sqlite3.Connection:
    """Open the shared read-write connection.

    Autocommit mode: callers open explicit transactions with ``BEGIN``.
    WAL lets read-only connections in worker processes run alongside writes.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
    _ = connection.execute("PRAGMA journal_mode = WAL")
    _ = connection.execute("PRAGMA synchronous = NORMAL")
    return connection


def connect_readonly(db_path: str) -> sqlite3.Connection:
    """Open a read-only connection that refuses writes at both URI and pragma level."""
    uri = Path(db_path).resolve().as_uri() + "?mode=ro"
    connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
    _ = connection.execute("PRAGMA query_only = ON")
    return connection


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def list_tables(connection: sqlite3.Connection) -> list[str]:
    rows = connection.execute(
        """
        SELECT name FROM sqlite_master
        WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'
        ORDER BY name
        """
    ).fetchall()
    return [str(row[0]) for row in rows]


def table_exists(connection: sqlite3.Connection, name: str) -> bool:
    row = connection.execute(
        "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') "
        "AND name = ? COLLATE NOCASE",
        (name,),
    ).fetchone()
    return row is not None


def sqlite_column_type(arrow_type: pa.DataType) -> str:
    if pa.types.is_integer(arrow_type) or pa.types.is_boolean(arrow_type):
        return "INTEGER"
    if pa.types.is_floating(arrow_type) or pa.types.is_decimal(arrow_type):
        return "REAL"
    if pa.types.is_binary(arrow_type) or pa.types.is_large_binary(arrow_type):
        return "BLOB"
    return "TEXT"


def to_sqlite_value(value: object) -> object:
    if value is None or isinstance(value, (int, float, str, bytes)):
        return value
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    return str(value)


def create_table(connection: sqlite3.Connection, table: str, schema: pa.Schema) -> None:
    columns = ", ".join(
        f"{quote_identifier(field.name)} {sqlite_column_type(field.type)}" for field in schema
    )
    _ = connection.execute(f"CREATE TABLE {quote_identifier(table)} ({columns})")


def insert_batch(connection: sqlite3.Connection, table: str, batch: pa.RecordBatch) -> int:
    if batch.num_rows == 0:
        return 0
    placeholders = ", ".join("?" for _ in range(batch.num_columns))
    columns = [
        [to_sqlite_value(value) for value in batch.column(index).to_pylist()]
        for index in range(batch.num_columns)
    ]
    _ = connection.executemany(
        f"INSERT INTO {quote_identifier(table)} VALUES ({placeholders})",
        zip(*columns),
    )
    return batch.num_rows


def write_table(
    connection: sqlite3.Connection,
    table: str,
    schema: pa.Schema,
    batches: Iterable[pa.RecordBatch],
) -> int:
    """Write batches into ``table`` atomically, replacing any existing table.

    Rows land in a staging table first; the old table is dropped and the
    staging table renamed inside the same transaction, so readers see either
    the old version or the new one and a failure leaves nothing behind.
    """
    staging = f"_staging_{table}"
    rows = 0
    _ = connection.execute("BEGIN IMMEDIATE")
    try:
        _ = connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(staging)}")
        create_table(connection, staging, schema)
        for batch in batches:
            rows += insert_batch(connection, staging, batch)
        _ = connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
        _ = connection.execute(
            f"ALTER TABLE {quote_identifier(staging)} RENAME TO {quote_identifier(table)}"
        )
        _ = connection.execute("COMMIT")
    except BaseException:
        _ = connection.execute("ROLLBACK")
        raise
    return rows


def drop_table(connection: sqlite3.Connection, table: str) -> None:
    _ = connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")


def fetch_all(
    connection: sqlite3.Connection,
    sql: str,
    params: Sequence[object] = (),
) -> tuple[list[str], list[tuple[object, ...]]]:
    cursor = connection.execute(sql, tuple(params))
    columns = [str(item[0]) for item in cursor.description or ()]
    return columns, cursor.fetchall()
