"""
Subprocess-based supervisor for submitted code and queries.
"""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from explorer_core.config import ExplorerConfig, SecurityPolicy
from explorer_core.errors import ErrorCode, ExecutionTimeout, InternalError, ResourceExceeded
from explorer_core.schemas import Artifact, ErrorInfo, ExecutionResult, ExecutionState, QueryResult
from sandbox import protocol
from sandbox.scope import ExecutionScope

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ExecutionState, set[ExecutionState]] = {
    ExecutionState.SPAWNED: {ExecutionState.RUNNING, ExecutionState.FAILED},
    ExecutionState.RUNNING: {
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.TIMED_OUT,
        ExecutionState.RESOURCE_EXCEEDED,
    },
}

# Signals that mean the kernel enforced a resource limit on the worker.
_RESOURCE_SIGNALS = {
    getattr(signal, name)
    for name in ("SIGKILL", "SIGXCPU", "SIGXFSZ")
    if hasattr(signal, name)
}


class ExecutionTracker:
    """State machine for one worker: SPAWNED -> RUNNING -> terminal."""

    def __init__(self) -> None:
        self.state: ExecutionState = ExecutionState.SPAWNED
        self.history: list[ExecutionState] = [ExecutionState.SPAWNED]

    def advance(self, state: ExecutionState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise InternalError(f"Illegal execution transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


@dataclass
class WorkerOutcome:
    pid: int | None
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    runtime_ms: float
    tracker: ExecutionTracker


class SandboxExecutor:
    """
    Run submitted code in disposable worker processes with enforced limits.

    Each call owns exactly one worker. Workers start in their own session so a
    timeout kills the whole process group. On Unix, CPU and memory ceilings are
    applied by the worker via resource.setrlimit; on Windows only the
    wall-clock timeout applies.
    """

    DEFAULT_MEMORY_LIMIT_MB: int = 2048
    KILL_GRACE_SECONDS: float = 5.0

    def __init__(
        self,
        memory_limit_mb: int | None = None,
        max_workers: int = 4,
        max_output_chars: int = 100_000,
        max_result_rows: int = 1000,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.memory_limit_mb: int = memory_limit_mb or self.DEFAULT_MEMORY_LIMIT_MB
        self.max_workers: int = max_workers
        self.max_output_chars: int = max_output_chars
        self.max_result_rows: int = max_result_rows
        self._slots: threading.BoundedSemaphore = threading.BoundedSemaphore(max_workers)
        self._active: set[int] = set()
        self._active_lock: threading.Lock = threading.Lock()
        self._mpl_config_dir: str = tempfile.mkdtemp(prefix="explorer-mpl-")

    @classmethod
    def from_config(cls, config: ExplorerConfig) -> "SandboxExecutor":
        return cls(
            memory_limit_mb=config.memory_limit_mb,
            max_workers=config.max_concurrent_workers,
            max_output_chars=config.max_output_chars,
            max_result_rows=config.max_result_rows,
        )

    def close(self) -> None:
        shutil.rmtree(self._mpl_config_dir, ignore_errors=True)

    def __enter__(self) -> "SandboxExecutor":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def active_workers(self) -> int:
        with self._active_lock:
            return len(self._active)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        scope: ExecutionScope,
        code: str,
        timeout_seconds: float,
        want_artifacts: bool = True,
        policy: SecurityPolicy | None = None,
    ) -> ExecutionResult:
        memory_limit_mb = policy.memory_limit_mb if policy else self.memory_limit_mb
        max_output_chars = policy.max_output_chars if policy else self.max_output_chars
        payload = {
            "code": code,
            "scope": scope.to_payload(),
            "want_artifacts": want_artifacts,
            "max_output_chars": max_output_chars,
            "max_rows": self.max_result_rows,
            "memory_limit_mb": memory_limit_mb,
            "cpu_seconds": self._cpu_seconds(timeout_seconds),
        }
        cwd = next(
            (path for path in scope.path_allowlist if Path(path).is_dir()),
            None,
        )
        outcome = self._run_worker(protocol.CHILD_TEMPLATE, payload, timeout_seconds, cwd)
        return self._execution_result(outcome, timeout_seconds)

    def execute_many(
        self,
        jobs: Sequence[tuple[ExecutionScope, str, float]],
        want_artifacts: bool = True,
    ) -> list[ExecutionResult]:
        """Run several executions concurrently; results keep the input order."""
        if not jobs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs))) as pool:
            futures = [
                pool.submit(self.execute, scope, code, timeout, want_artifacts)
                for scope, code, timeout in jobs
            ]
            return [future.result() for future in futures]

    def run_query(
        self,
        db_path: str | Path,
        sql: str,
        timeout_seconds: float,
        max_rows: int | None = None,
    ) -> QueryResult:
        payload = {
            "db_path": str(db_path),
            "sql": sql,
            "max_rows": max_rows or self.max_result_rows,
            "memory_limit_mb": self.memory_limit_mb,
            "cpu_seconds": self._cpu_seconds(timeout_seconds),
        }
        outcome = self._run_worker(protocol.QUERY_CHILD_TEMPLATE, payload, timeout_seconds)
        return self._query_result(outcome, timeout_seconds)

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _cpu_seconds(timeout_seconds: float) -> int:
        # Wall-clock timeout is the primary bound; the CPU limit only catches
        # workers that burn CPU faster than real time.
        return max(1, int(math.ceil(timeout_seconds)) * 2 + 1)

    def _worker_env(self) -> dict[str, str]:
        env = os.environ.copy()
        project_root = str(Path(__file__).resolve().parents[1])
        existing_pythonpath = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = (
            f"{project_root}{os.pathsep}{existing_pythonpath}"
            if existing_pythonpath
            else project_root
        )
        env["MPLBACKEND"] = "Agg"
        env["MPLCONFIGDIR"] = self._mpl_config_dir
        env["PYTHONDONTWRITEBYTECODE"] = "1"
        # Per-thread malloc arenas reserve address space counted by RLIMIT_AS.
        env.setdefault("MALLOC_ARENA_MAX", "2")
        env.setdefault("OPENBLAS_NUM_THREADS", "1")
        env.setdefault("OMP_NUM_THREADS", "1")
        return env

    def _run_worker(
        self,
        template: str,
        payload: dict[str, object],
        timeout_seconds: float,
        cwd: str | None = None,
    ) -> WorkerOutcome:
        tracker = ExecutionTracker()
        with self._slots:
            start = time.perf_counter()
            try:
                process = subprocess.Popen(
                    [sys.executable, "-c", template],
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    env=self._worker_env(),
                    cwd=cwd,
                    start_new_session=os.name != "nt",
                )
            except OSError as exc:
                logger.error(f"Failed to spawn sandbox worker: {exc}")
                tracker.advance(ExecutionState.FAILED)
                return WorkerOutcome(None, None, "", str(exc), False, 0.0, tracker)

            with self._active_lock:
                self._active.add(process.pid)
            tracker.advance(ExecutionState.RUNNING)
            logger.debug(f"Spawned sandbox worker pid={process.pid}")

            timed_out = False
            try:
                stdout, stderr = process.communicate(json.dumps(payload), timeout=timeout_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning(
                    f"Sandbox worker pid={process.pid} exceeded {timeout_seconds}s; killing"
                )
                self._kill(process)
                stdout, stderr = self._drain(process)
            finally:
                if process.poll() is None:
                    self._kill(process)
                with self._active_lock:
                    self._active.discard(process.pid)

            runtime_ms = (time.perf_counter() - start) * 1000
            return WorkerOutcome(
                pid=process.pid,
                returncode=process.returncode,
                stdout=stdout or "",
                stderr=stderr or "",
                timed_out=timed_out,
                runtime_ms=runtime_ms,
                tracker=tracker,
            )

    def _kill(self, process: subprocess.Popen[str]) -> None:
        """Kill the worker's process group and reap it."""
        if os.name != "nt":
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        else:
            process.kill()
        try:
            _ = process.wait(timeout=self.KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error(f"Sandbox worker pid={process.pid} did not exit after SIGKILL")
            raise InternalError(f"Sandbox worker {process.pid} could not be terminated")

    def _drain(self, process: subprocess.Popen[str]) -> tuple[str, str]:
        try:
            return process.communicate(timeout=self.KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Could not drain pipes of sandbox worker pid={process.pid}")
            return "", ""

    # ------------------------------------------------------------------
    # Result mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_response(stdout: str) -> dict[str, object] | None:
        if protocol.RESPONSE_MARKER not in stdout:
            return None
        raw = stdout.rsplit(protocol.RESPONSE_MARKER, 1)[1]
        try:
            loaded = cast(object, json.loads(raw))
        except json.JSONDecodeError:
            return None
        if not isinstance(loaded, dict):
            return None
        return cast(dict[str, object], loaded)

    @staticmethod
    def _failure_without_response(outcome: WorkerOutcome) -> tuple[ExecutionState, ErrorInfo]:
        returncode = outcome.returncode
        if returncode is not None and returncode < 0 and -returncode in _RESOURCE_SIGNALS:
            name = signal.Signals(-returncode).name
            exceeded = ResourceExceeded(f"Worker killed by {name} (resource limit exceeded)")
            return ExecutionState.RESOURCE_EXCEEDED, ErrorInfo.from_dict(exceeded.to_dict())
        if "MemoryError" in outcome.stderr:
            exceeded = ResourceExceeded("MemoryError: memory limit exceeded")
            return ExecutionState.RESOURCE_EXCEEDED, ErrorInfo.from_dict(exceeded.to_dict())
        detail = outcome.stderr.strip().splitlines()[-1:] or ["Empty response from sandbox"]
        return ExecutionState.FAILED, ErrorInfo(
            code=ErrorCode.INTERNAL_ERROR.value,
            message=f"Sandbox worker failed (exit code {returncode}): {detail[0]}",
        )

    @staticmethod
    def _timeout_error(timeout_seconds: float) -> ErrorInfo:
        return ErrorInfo.from_dict(ExecutionTimeout(f"Timeout after {timeout_seconds}s").to_dict())

    def _execution_result(self, outcome: WorkerOutcome, timeout_seconds: float) -> ExecutionResult:
        tracker = outcome.tracker
        if tracker.state == ExecutionState.FAILED:
            return ExecutionResult(
                state=ExecutionState.FAILED,
                error=ErrorInfo(code=ErrorCode.INTERNAL_ERROR.value, message=outcome.stderr),
            )

        if outcome.timed_out:
            tracker.advance(ExecutionState.TIMED_OUT)
            return ExecutionResult(
                state=tracker.state,
                error=self._timeout_error(timeout_seconds),
                runtime_ms=outcome.runtime_ms,
                worker_pid=outcome.pid,
            )

        data = self._parse_response(outcome.stdout)
        if data is None:
            state, error = self._failure_without_response(outcome)
            tracker.advance(state)
            return ExecutionResult(
                state=state, error=error, runtime_ms=outcome.runtime_ms, worker_pid=outcome.pid
            )

        error_value = data.get("error")
        error = ErrorInfo.from_dict(cast(dict[str, object], error_value)) if error_value else None
        if error is None:
            tracker.advance(ExecutionState.COMPLETED)
        elif error.code == ErrorCode.RESOURCE_EXCEEDED.value:
            tracker.advance(ExecutionState.RESOURCE_EXCEEDED)
        else:
            tracker.advance(ExecutionState.FAILED)

        artifacts = [
            Artifact.from_dict(cast(dict[str, object], item))
            for item in cast(list[object], data.get("artifacts") or [])
        ]
        logger.info(
            f"Sandbox worker pid={outcome.pid} finished {tracker.state.value} "
            f"in {outcome.runtime_ms:.0f}ms"
        )
        return ExecutionResult(
            state=tracker.state,
            output=str(data.get("output") or ""),
            result=data.get("result"),
            artifacts=artifacts,
            error=error,
            runtime_ms=outcome.runtime_ms,
            worker_pid=outcome.pid,
        )

    def _query_result(self, outcome: WorkerOutcome, timeout_seconds: float) -> QueryResult:
        elapsed_s = outcome.runtime_ms / 1000
        if outcome.tracker.state == ExecutionState.FAILED:
            error = ErrorInfo(code=ErrorCode.INTERNAL_ERROR.value, message=outcome.stderr)
            return QueryResult(error=error, elapsed_s=elapsed_s)
        if outcome.timed_out:
            return QueryResult(error=self._timeout_error(timeout_seconds), elapsed_s=elapsed_s)

        data = self._parse_response(outcome.stdout)
        if data is None:
            _, error = self._failure_without_response(outcome)
            return QueryResult(error=error, elapsed_s=elapsed_s)
        error_value = data.get("error")
        if error_value:
            error = ErrorInfo.from_dict(cast(dict[str, object], error_value))
            return QueryResult(error=error, elapsed_s=elapsed_s)

        columns = [str(name) for name in cast(list[object], data.get("columns") or [])]
        rows = cast(list[list[object]], data.get("rows") or [])
        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=int(str(data.get("row_count", len(rows)))),
            column_count=len(columns),
            elapsed_s=float(str(data.get("elapsed_s", elapsed_s))),
            truncated=bool(data.get("truncated")),
        )
