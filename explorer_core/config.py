"""Explorer configuration with YAML support."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ConfigDict, Field, field_validator, model_validator

from explorer_core.schemas import BaseSchema

MB = 1024 * 1024

DEFAULT_CAPABILITIES = [
    # builtins
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "format", "frozenset", "int", "isinstance", "issubclass", "iter", "len", "list",
    "map", "max", "min", "next", "pow", "print", "range", "repr", "reversed",
    "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    # exceptions user code may raise or catch
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "ZeroDivisionError", "ArithmeticError", "LookupError", "StopIteration",
    "RuntimeError",
    # data helpers and path-guarded I/O
    "list_data", "get_data", "open", "read_csv", "write_csv", "read_text",
    "write_text", "list_files",
    # plotting and columnar compute
    "plt", "pc",
]

DEFAULT_DENIED_IDENTIFIERS = [
    "eval", "exec", "compile", "input", "breakpoint", "globals", "locals", "vars",
    "getattr", "setattr", "delattr", "memoryview", "exit", "quit", "help",
    "system", "popen", "remove", "unlink", "rmdir", "rename", "chdir", "kill",
    "fork", "spawn",
]

DEFAULT_ALLOWED_MODULES = [
    "math", "statistics", "random", "itertools", "functools", "collections",
    "datetime", "re", "json", "decimal", "fractions", "operator", "string",
    "heapq", "bisect",
]


class SecurityPolicy(BaseSchema):
    """Process-wide execution policy, immutable once built."""

    model_config = ConfigDict(frozen=True)

    capabilities: tuple[str, ...]
    denied_identifiers: tuple[str, ...]
    path_allowlist: tuple[str, ...]
    allowed_modules: tuple[str, ...]
    timeout_s: float = Field(gt=0)
    memory_limit_mb: int = Field(gt=0)
    max_output_chars: int = Field(gt=0)


class ExplorerConfig(BaseSchema):
    """Startup configuration for the registry, sandbox and dispatcher."""

    data_root: str = "data"

    # Tier thresholds in bytes
    small_threshold_bytes: int = Field(default=100 * MB, gt=0)
    large_threshold_bytes: int = Field(default=1024 * MB, gt=0)

    default_timeout_s: float = Field(default=30.0, gt=0)
    max_timeout_s: float = Field(default=300.0, gt=0)
    memory_limit_mb: int = Field(default=2048, gt=0)
    max_concurrent_workers: int = Field(default=4, ge=1)

    max_output_chars: int = Field(default=100_000, gt=0)
    max_result_rows: int = Field(default=1000, gt=0)

    capabilities: list[str] = Field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    denied_identifiers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DENIED_IDENTIFIERS)
    )
    path_allowlist: list[str] = Field(default_factory=lambda: ["data"])
    allowed_modules: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MODULES))

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def log_level_upper(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def check_limits(self) -> "ExplorerConfig":
        if self.small_threshold_bytes >= self.large_threshold_bytes:
            raise ValueError("small_threshold_bytes must be below large_threshold_bytes")
        if self.default_timeout_s > self.max_timeout_s:
            raise ValueError("default_timeout_s must not exceed max_timeout_s")
        return self

    def security_policy(self) -> SecurityPolicy:
        # Allow-list prefixes are resolved once so later symlink changes
        # cannot widen them.
        resolved_paths = tuple(
            str(Path(path).expanduser().resolve()) for path in self.path_allowlist
        )
        return SecurityPolicy(
            capabilities=tuple(self.capabilities),
            denied_identifiers=tuple(self.denied_identifiers),
            path_allowlist=resolved_paths,
            allowed_modules=tuple(self.allowed_modules),
            timeout_s=self.default_timeout_s,
            memory_limit_mb=self.memory_limit_mb,
            max_output_chars=self.max_output_chars,
        )


def load_config(yaml_path: str | Path) -> ExplorerConfig:
    """Load explorer configuration from YAML file.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        ExplorerConfig instance

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValueError: If YAML is invalid or fails validation
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError(f"Empty or invalid YAML file: {yaml_path}")

    try:
        return ExplorerConfig.from_dict(data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {yaml_path}: {e}") from e


def save_config(config: ExplorerConfig, yaml_path: str | Path) -> None:
    """Save explorer configuration to YAML file."""
    yaml_path = Path(yaml_path)
    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.to_dict()

    with open(yaml_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
