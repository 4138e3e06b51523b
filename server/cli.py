"""CLI interface for the data explorer."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import NoReturn, Optional

import typer
import yaml

from explorer_core.config import ExplorerConfig, load_config
from explorer_core.errors import ExplorerError
from explorer_core.logging_setup import configure_logging
from query.validator import validate as validate_query
from server import formatting
from server.dispatcher import Dispatcher

app = typer.Typer(help="Sandboxed Data Explorer CLI")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to explorer YAML config")
DATA_OPTION = typer.Option(None, "--data", "-d", help="Dataset to load, as name=path")


def _fail(message: str) -> NoReturn:
    typer.secho(f"❌ {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


def _config(config_path: Optional[str]) -> ExplorerConfig:
    if config_path is None:
        return ExplorerConfig()
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        _fail(f"Config file not found: {e}")
    except ValueError as e:
        _fail(f"Invalid config: {e}")


def _parse_data(specs: Optional[list[str]]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for spec in specs or []:
        name, sep, path = spec.partition("=")
        if not sep or not name or not path:
            _fail(f"Invalid --data value '{spec}'; expected name=path")
        pairs.append((name.strip(), path.strip()))
    return pairs


def _open_dispatcher(config: ExplorerConfig, data: list[tuple[str, str]]) -> Dispatcher:
    dispatcher = Dispatcher(config)
    try:
        for name, path in data:
            info = dispatcher.load(path, name=name)
            typer.echo(
                f"Loaded {info.name}: {info.row_count:,} rows [{info.backend.value}]", err=True
            )
    except ExplorerError:
        dispatcher.close()
        raise
    return dispatcher


@app.command()
def serve(config_path: Optional[str] = CONFIG_OPTION) -> None:
    """Answer JSON-lines tool requests read from stdin.

    Each request line is ``{"tool": ..., "arguments": {...}, "id": ...}``; each
    response line is the tool response plus the request id.
    """
    config = _config(config_path)
    configure_logging(config.log_level)
    with Dispatcher(config) as dispatcher:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            request_id: object = None
            try:
                request = json.loads(line)
                if not isinstance(request, dict):
                    raise ValueError("request must be a JSON object")
                request_id = request.get("id")
                arguments = request.get("arguments") or {}
                response = dispatcher.handle(str(request.get("tool", "")), arguments).to_dict()
            except ValueError as e:
                response = {
                    "ok": False,
                    "tool": None,
                    "error": {"code": "validation_error", "message": f"Malformed request: {e}"},
                }
            response["id"] = request_id
            sys.stdout.write(json.dumps(response) + "\n")
            sys.stdout.flush()


@app.command()
def run(
    script: str = typer.Argument(..., help="Python script to execute in the sandbox"),
    data: Optional[list[str]] = DATA_OPTION,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Timeout in seconds"),
    config_path: Optional[str] = CONFIG_OPTION,
) -> None:
    """Run a script against loaded datasets in a sandboxed worker."""
    script_path = Path(script)
    if not script_path.exists():
        _fail(f"Script not found: {script}")
    config = _config(config_path)
    configure_logging(config.log_level)
    pairs = _parse_data(data)

    try:
        with _open_dispatcher(config, pairs) as dispatcher:
            result = dispatcher.execute(
                script_path.read_text(encoding="utf-8"),
                [name for name, _ in pairs],
                timeout_s=timeout,
            )
    except ExplorerError as e:
        _fail(f"[{e.code.value}] {e.message}")

    typer.echo(formatting.format_execution_result(result))
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def query(
    sql: str = typer.Argument(..., help="SQL query to run"),
    data: Optional[list[str]] = DATA_OPTION,
    dataset: Optional[str] = typer.Option(None, "--dataset", help="Dataset the query targets"),
    config_path: Optional[str] = CONFIG_OPTION,
) -> None:
    """Run a read-only SQL query against loaded datasets."""
    config = _config(config_path)
    configure_logging(config.log_level)
    pairs = _parse_data(data)

    try:
        with _open_dispatcher(config, pairs) as dispatcher:
            result = dispatcher.query(sql, dataset)
    except ExplorerError as e:
        _fail(f"[{e.code.value}] {e.message}")

    typer.echo(formatting.format_query_result(result))
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def validate(sql: str = typer.Argument(..., help="SQL query to check")) -> None:
    """Check a query against the safety filter without running it."""
    try:
        validate_query(sql)
    except ExplorerError as e:
        _fail(e.message)
    typer.secho("✅ Query passed the safety check", fg=typer.colors.GREEN)


@app.command()
def show_config(config_path: Optional[str] = CONFIG_OPTION) -> None:
    """Print the effective configuration as YAML."""
    config = _config(config_path)
    typer.echo(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False, indent=2))


if __name__ == "__main__":
    app()
