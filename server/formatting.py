"""Plain-text summaries returned alongside structured tool responses."""

from __future__ import annotations

from explorer_core.schemas import Backend, DatasetInfo, ExecutionResult, QueryResult
from registry.handles import DatasetHandle

BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")

SAMPLE_ROWS = 5


def format_bytes(size: int) -> str:
    value = float(size)
    index = 0
    while value >= 1024 and index < len(BYTE_UNITS) - 1:
        value /= 1024
        index += 1
    if index == 0:
        return f"{int(value)} B"
    return f"{value:.2f} {BYTE_UNITS[index]}"


def _render_cell(value: object, width: int = 24) -> str:
    text = "NULL" if value is None else str(value)
    return text if len(text) <= width else text[: width - 3] + "..."


def format_table(columns: list[str], rows: list[list[object]]) -> list[str]:
    header = " | ".join(columns)
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(" | ".join(_render_cell(value) for value in row))
    return lines


def format_load_summary(info: DatasetInfo, handle: DatasetHandle, load_time_s: float) -> str:
    lines = [f"Successfully loaded dataset '{info.name}'", ""]
    lines.extend(_overview_lines(info))
    lines.append(f"  Load time: {load_time_s:.2f} seconds")
    lines.extend(_column_lines(info, handle))
    return "\n".join(lines)


def format_description(info: DatasetInfo, handle: DatasetHandle) -> str:
    lines = [f"Dataset '{info.name}'", ""]
    lines.extend(_overview_lines(info))
    if info.source_path:
        lines.append(f"  Source: {info.source_path}")
    lines.extend(_column_lines(info, handle))
    return "\n".join(lines)


def _overview_lines(info: DatasetInfo) -> list[str]:
    return [
        f"  Rows: {info.row_count:,}",
        f"  Columns: {len(info.columns)}",
        f"  Size: {format_bytes(info.byte_size)}",
        f"  Storage backend: {info.backend.value}",
    ]


def _column_lines(info: DatasetInfo, handle: DatasetHandle) -> list[str]:
    lines = ["", "Columns:"]

    # Null counts need a full pass; only done for the in-memory tier.
    if info.backend == Backend.MEMORY:
        summary = handle.summary().to_pylist()
        for row in summary:
            nulls = int(str(row["nulls"]))
            missing = ""
            if nulls and info.row_count:
                missing = f" - {100 * nulls / info.row_count:.1f}% missing"
            lines.append(f"  {row['column']} ({row['type']}){missing}")
    else:
        for column in info.columns:
            lines.append(f"  {column.name} ({column.type})")

    sample = handle.head(SAMPLE_ROWS)
    if sample.num_rows:
        lines.append("")
        lines.append(f"First {sample.num_rows} rows:")
        rows = [list(row.values()) for row in sample.to_pylist()]
        lines.extend(f"  {line}" for line in format_table(sample.column_names, rows))
    return lines


def format_dataset_list(infos: list[DatasetInfo]) -> str:
    if not infos:
        return "No datasets loaded."
    lines = [f"{len(infos)} dataset(s):"]
    for info in infos:
        lines.append(
            f"  {info.name}: {info.row_count:,} rows x {len(info.columns)} columns "
            f"[{info.backend.value}, {format_bytes(info.byte_size)}]"
        )
    return "\n".join(lines)


def format_execution_result(result: ExecutionResult) -> str:
    lines: list[str] = []
    if result.output:
        lines.append(result.output.rstrip("\n"))
    if result.error is not None:
        lines.append(f"Error [{result.error.code}]: {result.error.message}")
    elif result.result is not None:
        lines.append(f"Result: {result.result}")
    if result.artifacts:
        names = ", ".join(artifact.name for artifact in result.artifacts)
        lines.append(f"Artifacts: {names}")
    lines.append(f"Execution time: {result.runtime_ms / 1000:.3f} seconds ({result.state.value})")
    return "\n".join(lines)


def format_query_result(result: QueryResult) -> str:
    if result.error is not None:
        return "\n".join(
            [
                "Query Error:",
                result.error.message,
                "",
                f"Execution time: {result.elapsed_s:.3f} seconds",
            ]
        )
    lines = ["Query executed successfully", "", "Execution Statistics:"]
    lines.append(f"  Rows returned: {result.row_count:,}")
    lines.append(f"  Columns: {result.column_count}")
    lines.append(f"  Execution time: {result.elapsed_s:.3f} seconds")
    lines.append("")
    lines.extend(format_table(result.columns, result.rows))
    if result.truncated:
        lines.append(f"... showing {len(result.rows)} of {result.row_count:,} rows")
    return "\n".join(lines)
