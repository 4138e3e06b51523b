"""Tests for the file format loaders."""

from __future__ import annotations

import json
from pathlib import Path

import pyarrow as pa
import pyarrow.feather as pa_feather
import pyarrow.parquet as pq
import pytest

from explorer_core.errors import NotFound, ValidationError
from registry import loaders


def test_detect_format_by_extension() -> None:
    assert loaders.detect_format("sales.csv") == "csv"
    assert loaders.detect_format("events.TSV") == "tsv"
    assert loaders.detect_format("logs.parquet") == "parquet"
    assert loaders.detect_format("frame.feather") == "arrow"
    assert loaders.detect_format("rows.ndjson") == "jsonl"


def test_explicit_format_option_wins() -> None:
    assert loaders.detect_format("export.dat", {"format": "csv"}) == "csv"


def test_unsupported_extension_rejected() -> None:
    with pytest.raises(ValidationError, match="Unsupported file type"):
        loaders.detect_format("book.xlsx")


def test_missing_file_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        loaders.read_table(tmp_path / "missing.csv")


def test_read_csv_with_missing_values(tmp_path: Path) -> None:
    path = tmp_path / "sales.csv"
    path.write_text("region,amount\nnorth,10\nsouth,NA\neast,7\n")

    table = loaders.read_table(path)

    assert table.column_names == ["region", "amount"]
    assert table.num_rows == 3
    assert table.column("amount").null_count == 1
    assert pa.types.is_integer(table.schema.field("amount").type)


def test_read_tsv(tmp_path: Path) -> None:
    path = tmp_path / "events.tsv"
    path.write_text("kind\tcount\nclick\t3\nview\t5\n")

    table = loaders.read_table(path)

    assert table.column("count").to_pylist() == [3, 5]


def test_read_csv_without_header(tmp_path: Path) -> None:
    path = tmp_path / "raw.csv"
    path.write_text("1,a\n2,b\n")

    table = loaders.read_table(path, {"header": False})

    assert table.num_rows == 2
    assert table.column_names == ["f0", "f1"]


def test_read_json_records_and_jsonl(tmp_path: Path) -> None:
    records = [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
    json_path = tmp_path / "records.json"
    json_path.write_text(json.dumps(records))
    jsonl_path = tmp_path / "records.jsonl"
    jsonl_path.write_text("\n".join(json.dumps(record) for record in records) + "\n")

    assert loaders.read_table(json_path).to_pylist() == records
    assert loaders.read_table(jsonl_path).to_pylist() == records


def test_json_must_hold_records(tmp_path: Path) -> None:
    path = tmp_path / "scalar.json"
    path.write_text("[1, 2, 3]")
    with pytest.raises(ValidationError):
        loaders.read_table(path)


def test_read_parquet_and_feather(tmp_path: Path) -> None:
    table = pa.table({"x": [1, 2, 3], "y": ["a", "b", "c"]})
    pq.write_table(table, tmp_path / "frame.parquet")
    pa_feather.write_feather(table, str(tmp_path / "frame.feather"))

    assert loaders.read_table(tmp_path / "frame.parquet").equals(table)
    assert loaders.read_table(tmp_path / "frame.feather").equals(table)


def test_iter_batches_streams_parquet(tmp_path: Path) -> None:
    table = pa.table({"x": list(range(100))})
    pq.write_table(table, tmp_path / "numbers.parquet")

    schema, batches = loaders.iter_batches(tmp_path / "numbers.parquet", batch_size=30)
    sizes = [batch.num_rows for batch in batches]

    assert schema.names == ["x"]
    assert sum(sizes) == 100
    assert max(sizes) <= 30
