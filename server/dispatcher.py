"""
Request dispatcher: maps tool invocations onto the registry and sandbox.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

import pydantic

from explorer_core.config import ExplorerConfig
from explorer_core.errors import ExplorerError, InternalError, NotFound, ValidationError
from explorer_core.schemas import (
    Backend,
    DatasetInfo,
    DescribeRequest,
    ErrorInfo,
    ExecutionRequest,
    ExecutionResult,
    LoadRequest,
    QueryRequest,
    QueryResult,
    ToolResponse,
)
from query.validator import referenced_datasets, validate
from registry.registry import DataRegistry
from sandbox.executor import SandboxExecutor
from sandbox.policy import check_code, guard_path
from sandbox.scope import ScopeBuilder
from server import formatting

logger = logging.getLogger(__name__)

_NON_IDENTIFIER = re.compile(r"\W")


def dataset_name_for(path: str | Path) -> str:
    """Identifier derived from a file name, e.g. ``2024 sales.csv`` -> ``d_2024_sales``."""
    name = _NON_IDENTIFIER.sub("_", Path(path).stem).strip("_") or "dataset"
    if name[0].isdigit():
        name = f"d_{name}"
    return name


class Dispatcher:
    """Single entry point for tool calls.

    Requests are handled one at a time; the heavy lifting happens in worker
    processes owned by the executor. ``handle`` never raises for a failed tool
    call.
    """

    def __init__(
        self,
        config: ExplorerConfig,
        registry: DataRegistry | None = None,
        executor: SandboxExecutor | None = None,
    ) -> None:
        self.config: ExplorerConfig = config
        self.policy = config.security_policy()
        self.registry: DataRegistry = registry or DataRegistry.from_config(config)
        self.executor: SandboxExecutor = executor or SandboxExecutor.from_config(config)
        self.scope_builder: ScopeBuilder = ScopeBuilder(self.registry)
        self._handlers: dict[str, Callable[[Mapping[str, object]], ToolResponse]] = {
            "load": self._handle_load,
            "execute": self._handle_execute,
            "query": self._handle_query,
            "list_datasets": self._handle_list,
            "describe": self._handle_describe,
        }

    @property
    def tools(self) -> list[str]:
        return list(self._handlers)

    def close(self) -> None:
        self.executor.close()
        self.registry.close()

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load(
        self,
        path: str | Path,
        name: str | None = None,
        options: Mapping[str, object] | None = None,
        size_hint: int | None = None,
        force_backend: Backend | str | None = None,
        overwrite: bool = False,
    ) -> DatasetInfo:
        source = guard_path(path, self.policy.path_allowlist)
        if not source.exists():
            raise NotFound(f"File not found: {path}")
        dataset_name = name or dataset_name_for(source)
        logger.info(f"Loading data from: {source}")
        return self.registry.store(
            dataset_name,
            source,
            size_hint=size_hint,
            force_backend=force_backend,
            source_path=str(source),
            overwrite=overwrite,
            options=options,
        )

    def clamp_timeout(self, timeout_s: float | None) -> float:
        if timeout_s is None:
            return self.policy.timeout_s
        if timeout_s <= 0:
            raise ValidationError("timeout must be positive")
        return min(float(timeout_s), self.config.max_timeout_s)

    def execute(
        self,
        code: str,
        dataset_names: Iterable[str] = (),
        timeout_s: float | None = None,
        want_artifacts: bool = True,
    ) -> ExecutionResult:
        # Rejected code never reaches a worker.
        _ = check_code(code)
        timeout = self.clamp_timeout(timeout_s)
        scope = self.scope_builder.build(dataset_names, self.policy)
        return self.executor.execute(scope, code, timeout, want_artifacts, policy=self.policy)

    def query(self, text: str, dataset_name: str | None = None) -> QueryResult:
        cleaned = validate(text)
        if dataset_name is not None:
            _ = self.registry.info(dataset_name)
            targets = [dataset_name]
        else:
            targets = referenced_datasets(cleaned, self.registry.names())
        for name in targets:
            if self.registry.promote(name):
                logger.info(f"Promoted {name} for SQL access")
        return self.executor.run_query(
            self.registry.db_path,
            cleaned,
            self.policy.timeout_s,
            max_rows=self.config.max_result_rows,
        )

    def list_datasets(self) -> list[DatasetInfo]:
        return self.registry.list()

    def describe(self, name: str) -> DatasetInfo:
        return self.registry.info(name)

    # ------------------------------------------------------------------
    # Tool surface
    # ------------------------------------------------------------------

    def handle(self, tool: str, arguments: Mapping[str, object] | None = None) -> ToolResponse:
        handler = self._handlers.get(tool)
        if handler is None:
            error = ValidationError(f"Unknown tool '{tool}'. Available: {', '.join(self.tools)}")
            return self._error_response(tool, error)
        try:
            return handler(arguments or {})
        except pydantic.ValidationError as exc:
            return self._error_response(tool, ValidationError(f"Invalid arguments: {exc}"))
        except ExplorerError as exc:
            logger.warning(f"Tool {tool} failed: [{exc.code.value}] {exc.message}")
            return self._error_response(tool, exc)
        except Exception as exc:
            logger.exception(f"Unexpected failure in tool {tool}")
            return self._error_response(tool, InternalError(f"{exc.__class__.__name__}: {exc}"))

    @staticmethod
    def _error_response(tool: str, error: ExplorerError) -> ToolResponse:
        info = ErrorInfo.from_dict(error.to_dict())
        return ToolResponse(ok=False, tool=tool, text=f"Error: {error.message}", error=info)

    def _handle_load(self, arguments: Mapping[str, object]) -> ToolResponse:
        request = LoadRequest.from_dict(arguments)
        start = time.perf_counter()
        info = self.load(
            request.path,
            name=request.name,
            options=request.options,
            size_hint=request.size_hint,
            force_backend=request.force_backend,
            overwrite=request.overwrite,
        )
        elapsed = time.perf_counter() - start
        text = formatting.format_load_summary(info, self.registry.get(info.name), elapsed)
        return ToolResponse(ok=True, tool="load", text=text, data=info.to_dict())

    def _handle_execute(self, arguments: Mapping[str, object]) -> ToolResponse:
        request = ExecutionRequest.from_dict(arguments)
        result = self.execute(
            request.code,
            request.datasets,
            timeout_s=request.timeout_s,
            want_artifacts=request.want_artifacts,
        )
        return ToolResponse(
            ok=result.ok,
            tool="execute",
            text=formatting.format_execution_result(result),
            data=result.to_dict(),
            error=result.error,
        )

    def _handle_query(self, arguments: Mapping[str, object]) -> ToolResponse:
        request = QueryRequest.from_dict(arguments)
        result = self.query(request.text, request.dataset)
        return ToolResponse(
            ok=result.ok,
            tool="query",
            text=formatting.format_query_result(result),
            data=result.to_dict(),
            error=result.error,
        )

    def _handle_list(self, _arguments: Mapping[str, object]) -> ToolResponse:
        infos = self.list_datasets()
        return ToolResponse(
            ok=True,
            tool="list_datasets",
            text=formatting.format_dataset_list(infos),
            data={"datasets": [info.to_dict() for info in infos]},
        )

    def _handle_describe(self, arguments: Mapping[str, object]) -> ToolResponse:
        request = DescribeRequest.from_dict(arguments)
        info = self.describe(request.name)
        text = formatting.format_description(info, self.registry.get(info.name))
        return ToolResponse(ok=True, tool="describe", text=text, data=info.to_dict())
