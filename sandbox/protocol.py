"""
Child process protocol for sandbox execution.

The supervisor writes one JSON payload to the worker's stdin; the worker
writes one JSON response to stdout after ``RESPONSE_MARKER`` so stray writes
from native libraries cannot corrupt it.
"""

from __future__ import annotations

import ast
import base64
import contextlib
import datetime
import decimal
import io
import json
import math
import os
import sqlite3
import sys
import time
import traceback
from typing import TextIO, cast

from explorer_core.errors import ErrorCode, ExplorerError, ResourceExceeded

CHILD_TEMPLATE = """
from sandbox.protocol import child_main
child_main()
""".strip()

QUERY_CHILD_TEMPLATE = """
from sandbox.protocol import query_child_main
query_child_main()
""".strip()

RESPONSE_MARKER = "\n<<<explorer-response>>>\n"

TRUNCATION_MARKER = "\n... [output truncated]"

SANDBOX_FILENAME = "<sandbox>"

DEFAULT_MAX_ROWS = 100

WORKER_THREADS = 2


def _load_payload() -> dict[str, object]:
    raw = sys.stdin.read()
    if not raw:
        return {}
    try:
        return cast(dict[str, object], json.loads(raw))
    except json.JSONDecodeError:
        return {}


def _format_error(exc: BaseException) -> str:
    return f"{exc.__class__.__name__}: {exc}"


def _sandbox_line(exc: BaseException) -> int | None:
    frames = [
        frame
        for frame in traceback.extract_tb(exc.__traceback__)
        if frame.filename == SANDBOX_FILENAME
    ]
    return frames[-1].lineno if frames else None


def _error_payload(exc: BaseException) -> dict[str, object]:
    if isinstance(exc, ExplorerError):
        return exc.to_dict()
    if isinstance(exc, MemoryError):
        return ResourceExceeded("MemoryError: memory limit exceeded").to_dict()
    message = _format_error(exc)
    line = _sandbox_line(exc)
    if line is not None:
        message = f"{message} (line {line})"
    return {"code": ErrorCode.EXECUTION_ERROR.value, "message": message}


def truncate_output(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def bound_threads(count: int = WORKER_THREADS) -> None:
    """Cap Arrow thread pools; each thread stack counts toward the memory ceiling."""
    import pyarrow as pa

    pa.set_cpu_count(count)
    pa.set_io_thread_count(count)


def apply_limits(memory_limit_mb: int, cpu_seconds: int) -> None:
    """Lower this process's CPU and address-space limits (Unix only)."""
    try:
        import resource
    except ImportError:
        return

    def _lower(limit: int, value: int) -> None:
        _, hard = resource.getrlimit(limit)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(limit, (value, hard))

    _lower(resource.RLIMIT_CPU, max(1, cpu_seconds))
    memory_bytes = int(memory_limit_mb * 1024 * 1024)
    if hasattr(resource, "RLIMIT_AS"):
        _lower(resource.RLIMIT_AS, memory_bytes)
    elif hasattr(resource, "RLIMIT_DATA"):
        _lower(resource.RLIMIT_DATA, memory_bytes)


def to_jsonable(value: object, max_rows: int = DEFAULT_MAX_ROWS) -> object:
    """Render a result value as JSON-representable data."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, dict):
        return {str(key): to_jsonable(item, max_rows) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item, max_rows) for item in list(value)[:max_rows]]

    # Arrow and dataset handles are only importable once a dataset is bound.
    import pyarrow as pa

    from registry.handles import DatasetHandle

    if isinstance(value, DatasetHandle):
        table = value.collect(limit=max_rows)
        return _table_payload(table, value.count(), max_rows)
    if isinstance(value, pa.Table):
        return _table_payload(value.slice(0, max_rows), value.num_rows, max_rows)
    if isinstance(value, pa.RecordBatch):
        head = pa.Table.from_batches([value.slice(0, max_rows)])
        return _table_payload(head, value.num_rows, max_rows)
    if isinstance(value, (pa.Array, pa.ChunkedArray)):
        return to_jsonable(value.slice(0, max_rows).to_pylist(), max_rows)
    if isinstance(value, pa.Scalar):
        return to_jsonable(value.as_py(), max_rows)
    return repr(value)


def _table_payload(table: object, row_count: int, max_rows: int) -> dict[str, object]:
    import pyarrow as pa

    assert isinstance(table, pa.Table)
    rows = [
        [to_jsonable(item, max_rows) for item in row.values()]
        for row in table.to_pylist()
    ]
    return {
        "type": "table",
        "columns": table.column_names,
        "rows": rows,
        "row_count": row_count,
        "truncated": row_count > len(rows),
    }


def run_code(code: str, namespace: dict[str, object]) -> object:
    """Execute ``code``; if its last statement is an expression, return its value."""
    tree = ast.parse(code, filename=SANDBOX_FILENAME, mode="exec")
    last_expr: ast.Expr | None = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last_expr = cast(ast.Expr, tree.body.pop())
    exec(compile(tree, SANDBOX_FILENAME, "exec"), namespace)
    if last_expr is None:
        return None
    expression = ast.Expression(last_expr.value)
    return eval(compile(expression, SANDBOX_FILENAME, "eval"), namespace)


def capture_figures() -> list[dict[str, object]]:
    """Encode every open matplotlib figure as a PNG artifact and close them."""
    pyplot = sys.modules.get("matplotlib.pyplot")
    if pyplot is None:
        return []
    artifacts: list[dict[str, object]] = []
    for number in pyplot.get_fignums():
        figure = pyplot.figure(number)
        buffer = io.BytesIO()
        figure.savefig(buffer, format="png", dpi=100, bbox_inches="tight")
        artifacts.append(
            {
                "name": f"figure_{number}.png",
                "media_type": "image/png",
                "data_base64": base64.b64encode(buffer.getvalue()).decode("ascii"),
            }
        )
    pyplot.close("all")
    return artifacts


def _write_response(stream: TextIO, response: dict[str, object]) -> None:
    _ = stream.write(RESPONSE_MARKER + json.dumps(response, default=str))
    stream.flush()


def child_main() -> None:
    """Entry point for the sandbox child process."""
    start = time.perf_counter()
    stdout = sys.stdout
    payload = _load_payload()
    code = str(payload.get("code", ""))
    want_artifacts = bool(payload.get("want_artifacts", True))
    max_output_chars = int(str(payload.get("max_output_chars", 100_000)))
    max_rows = int(str(payload.get("max_rows", DEFAULT_MAX_ROWS)))
    scope_payload = cast(dict[str, object], payload.get("scope", {}))

    buffer = io.StringIO()
    artifacts: list[dict[str, object]] = []
    response: dict[str, object]
    try:
        from sandbox.policy import install_write_guard
        from sandbox.scope import ExecutionScope

        scope = ExecutionScope.from_payload(scope_payload)
        # Datasets are mapped before limits apply; the mapping counts toward
        # the address-space ceiling either way.
        handles = scope.open_handles()
        namespace = scope.materialize(handles)
        bound_threads()
        extra_writable = [os.environ["MPLCONFIGDIR"]] if os.environ.get("MPLCONFIGDIR") else []
        _ = install_write_guard(scope.path_allowlist, extra_writable)
        apply_limits(
            int(str(payload.get("memory_limit_mb", 2048))),
            int(str(payload.get("cpu_seconds", 60))),
        )
        with contextlib.redirect_stdout(buffer), contextlib.redirect_stderr(buffer):
            value = run_code(code, namespace)
            rendered = to_jsonable(value, max_rows)
        response = {"success": True, "result": rendered, "error": None}
    except BaseException as exc:  # noqa: BLE001 - capture all child errors
        response = {"success": False, "result": None, "error": _error_payload(exc)}

    if want_artifacts:
        try:
            artifacts = capture_figures()
        except Exception as exc:  # noqa: BLE001 - figure export is best effort
            buffer.write(f"\n[figure capture failed: {_format_error(exc)}]")

    response["output"] = truncate_output(buffer.getvalue(), max_output_chars)
    response["artifacts"] = artifacts
    response["runtime_ms"] = (time.perf_counter() - start) * 1000
    _write_response(stdout, response)


def _sqlite_value(value: object) -> object:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    return value


def query_child_main() -> None:
    """Entry point for SQL queries against the relational tier."""
    start = time.perf_counter()
    stdout = sys.stdout
    payload = _load_payload()
    sql = str(payload.get("sql", ""))
    db_path = str(payload.get("db_path", ""))
    max_rows = int(str(payload.get("max_rows", 1000)))

    response: dict[str, object]
    try:
        from registry.database import connect_readonly

        apply_limits(
            int(str(payload.get("memory_limit_mb", 2048))),
            int(str(payload.get("cpu_seconds", 60))),
        )
        connection = connect_readonly(db_path)
        try:
            cursor = connection.execute(sql)
            columns = [item[0] for item in cursor.description or []]
            rows = [[_sqlite_value(item) for item in row] for row in cursor.fetchmany(max_rows)]
            row_count = len(rows)
            while True:
                chunk = cursor.fetchmany(10_000)
                if not chunk:
                    break
                row_count += len(chunk)
        finally:
            connection.close()
        response = {
            "success": True,
            "columns": columns,
            "rows": rows,
            "row_count": row_count,
            "column_count": len(columns),
            "truncated": row_count > len(rows),
            "error": None,
        }
    except sqlite3.Error as exc:
        message = f"SQL error: {exc}"
        code = ErrorCode.EXECUTION_ERROR.value
        lowered = str(exc).lower()
        if "readonly" in lowered or "read-only" in lowered or "query_only" in lowered:
            code = ErrorCode.ACCESS_DENIED.value
        response = {"success": False, "error": {"code": code, "message": message}}
    except BaseException as exc:  # noqa: BLE001 - capture all child errors
        response = {"success": False, "error": _error_payload(exc)}

    response["elapsed_s"] = time.perf_counter() - start
    _write_response(stdout, response)


if __name__ == "__main__":
    child_main()
