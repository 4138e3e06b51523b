"""File format loaders producing Arrow tables or record batch streams."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from pathlib import Path

import pyarrow as pa
import pyarrow.csv as pa_csv
import pyarrow.feather as pa_feather
import pyarrow.json as pa_json
import pyarrow.parquet as pq

from explorer_core.errors import NotFound, ValidationError

DEFAULT_BATCH_ROWS = 65_536

DEFAULT_NA_STRINGS = ["", "NA", "NULL", "null", "N/A", "n/a"]

FORMATS_BY_EXTENSION = {
    ".csv": "csv",
    ".tsv": "tsv",
    ".txt": "csv",
    ".parquet": "parquet",
    ".pq": "parquet",
    ".arrow": "arrow",
    ".feather": "arrow",
    ".ipc": "arrow",
    ".json": "json",
    ".jsonl": "jsonl",
    ".ndjson": "jsonl",
}

LoadOptions = Mapping[str, object]


def detect_format(path: str | Path, options: LoadOptions | None = None) -> str:
    """Return the loader name for ``path``; an explicit ``format`` option wins."""
    explicit = (options or {}).get("format")
    if explicit:
        name = str(explicit).lower()
        if name not in set(FORMATS_BY_EXTENSION.values()):
            raise ValidationError(f"Unsupported format: {name}")
        return name
    suffix = Path(path).suffix.lower()
    fmt = FORMATS_BY_EXTENSION.get(suffix)
    if fmt is None:
        supported = ", ".join(sorted(FORMATS_BY_EXTENSION))
        raise ValidationError(f"Unsupported file type '{suffix}'. Supported: {supported}")
    return fmt


def _require_file(path: str | Path) -> Path:
    resolved = Path(path)
    if not resolved.exists():
        raise NotFound(f"File not found: {path}")
    return resolved


def _csv_options(
    fmt: str, options: LoadOptions
) -> tuple[pa_csv.ReadOptions, pa_csv.ParseOptions, pa_csv.ConvertOptions]:
    delimiter = str(options.get("delimiter", "\t" if fmt == "tsv" else ","))
    header = bool(options.get("header", True))
    na_value = options.get("na_strings", DEFAULT_NA_STRINGS)
    na_strings = [str(item) for item in na_value] if isinstance(na_value, list) else DEFAULT_NA_STRINGS
    skip_rows = int(str(options.get("skip", 0)))
    read_options = pa_csv.ReadOptions(
        autogenerate_column_names=not header,
        skip_rows=skip_rows,
        block_size=1 << 22,
    )
    parse_options = pa_csv.ParseOptions(delimiter=delimiter)
    convert_options = pa_csv.ConvertOptions(null_values=na_strings, strings_can_be_null=True)
    return read_options, parse_options, convert_options


def _read_json_records(path: Path) -> pa.Table:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        # Either a column mapping or a single record
        if all(isinstance(value, list) for value in data.values()):
            return pa.table(data)
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValidationError(f"JSON file must hold an array of objects: {path}")
    return pa.Table.from_pylist(data)


def read_table(path: str | Path, options: LoadOptions | None = None) -> pa.Table:
    """Load a whole file into an Arrow table."""
    opts = options or {}
    fmt = detect_format(path, opts)
    source = _require_file(path)
    if fmt in ("csv", "tsv"):
        read_options, parse_options, convert_options = _csv_options(fmt, opts)
        return pa_csv.read_csv(
            source,
            read_options=read_options,
            parse_options=parse_options,
            convert_options=convert_options,
        )
    if fmt == "parquet":
        return pq.read_table(source)
    if fmt == "arrow":
        return pa_feather.read_table(source)
    if fmt == "jsonl":
        return pa_json.read_json(source)
    return _read_json_records(source)


def iter_batches(
    path: str | Path,
    options: LoadOptions | None = None,
    batch_size: int = DEFAULT_BATCH_ROWS,
) -> tuple[pa.Schema, Iterator[pa.RecordBatch]]:
    """Open a file as a stream of record batches.

    Delimited text and Parquet are streamed so files larger than memory can be
    written into the columnar or relational tier; other formats are read whole.
    """
    opts = options or {}
    fmt = detect_format(path, opts)
    source = _require_file(path)
    if fmt in ("csv", "tsv"):
        read_options, parse_options, convert_options = _csv_options(fmt, opts)
        reader = pa_csv.open_csv(
            source,
            read_options=read_options,
            parse_options=parse_options,
            convert_options=convert_options,
        )
        return reader.schema, iter(reader)
    if fmt == "parquet":
        parquet_file = pq.ParquetFile(source)
        return parquet_file.schema_arrow, parquet_file.iter_batches(batch_size=batch_size)
    table = read_table(source, opts)
    return table.schema, iter(table.to_batches(max_chunksize=batch_size))
