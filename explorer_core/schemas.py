from __future__ import annotations

import base64
from datetime import datetime, timezone
from collections.abc import Mapping
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, Field, field_validator


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


TBaseSchema = TypeVar("TBaseSchema", bound="BaseSchema")


class BaseSchema(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, object]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls: type[TBaseSchema], data: str) -> TBaseSchema:
        return cls.model_validate_json(data)

    @classmethod
    def from_dict(cls: type[TBaseSchema], data: Mapping[str, object]) -> TBaseSchema:
        return cls.model_validate(data)


class Backend(str, Enum):
    MEMORY = "memory"
    COLUMNAR = "columnar"
    RELATIONAL = "relational"


class ExecutionState(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"

    @property
    def terminal(self) -> bool:
        return self not in (ExecutionState.SPAWNED, ExecutionState.RUNNING)


class ColumnInfo(BaseSchema):
    name: str
    type: str


class DatasetInfo(BaseSchema):
    name: str
    backend: Backend
    columns: list[ColumnInfo]
    row_count: int = Field(ge=0)
    byte_size: int = Field(ge=0)
    source_path: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @property
    def column_types(self) -> dict[str, str]:
        return {column.name: column.type for column in self.columns}


class DatasetRef(BaseSchema):
    """Serializable pointer used to rebind a dataset inside a worker process."""

    name: str
    backend: Backend
    location: str
    table: str | None = None
    columns: list[ColumnInfo]
    row_count: int = Field(ge=0)


class ErrorInfo(BaseSchema):
    code: str
    message: str
    details: dict[str, object] | None = None


class Artifact(BaseSchema):
    name: str
    media_type: str
    data_base64: str

    @property
    def content(self) -> bytes:
        return base64.b64decode(self.data_base64)


class LoadRequest(BaseSchema):
    path: str
    name: str | None = None
    options: dict[str, object] = Field(default_factory=dict)
    size_hint: int | None = Field(default=None, ge=0)
    force_backend: Backend | None = None
    overwrite: bool = False


class DescribeRequest(BaseSchema):
    name: str


class ExecutionRequest(BaseSchema):
    code: str
    datasets: list[str] = Field(default_factory=list)
    timeout_s: float | None = Field(default=None, gt=0)
    want_artifacts: bool = True


class ExecutionResult(BaseSchema):
    state: ExecutionState
    output: str = ""
    result: object | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    error: ErrorInfo | None = None
    runtime_ms: float = 0.0
    worker_pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.state == ExecutionState.COMPLETED and self.error is None


class QueryRequest(BaseSchema):
    text: str
    dataset: str | None = None


class QueryResult(BaseSchema):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[object]] = Field(default_factory=list)
    row_count: int = 0
    column_count: int = 0
    elapsed_s: float = 0.0
    truncated: bool = False
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolResponse(BaseSchema):
    ok: bool
    tool: str
    text: str | None = None
    data: dict[str, object] | None = None
    error: ErrorInfo | None = None
