"""Error taxonomy shared by the registry, sandbox and dispatcher."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    ACCESS_DENIED = "access_denied"
    TIMEOUT = "timeout"
    RESOURCE_EXCEEDED = "resource_exceeded"
    STORAGE_ERROR = "storage_error"
    INTERNAL_ERROR = "internal_error"
    # Exception raised by submitted code itself
    EXECUTION_ERROR = "execution_error"


class ExplorerError(Exception):
    """Base class for all explorer failures.

    Every subclass carries a stable ``code`` so failures can be returned to
    callers as structured data instead of tracebacks.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def details(self) -> dict[str, object]:
        return {}

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"code": self.code.value, "message": self.message}
        details = self.details()
        if details:
            payload["details"] = details
        return payload


class NotFound(ExplorerError):
    code = ErrorCode.NOT_FOUND


class ValidationError(ExplorerError):
    code = ErrorCode.VALIDATION_ERROR


class AccessDenied(ExplorerError):
    code = ErrorCode.ACCESS_DENIED


class ExecutionTimeout(ExplorerError):
    code = ErrorCode.TIMEOUT


class ResourceExceeded(ExplorerError):
    code = ErrorCode.RESOURCE_EXCEEDED


class InternalError(ExplorerError):
    code = ErrorCode.INTERNAL_ERROR


class StorageError(ExplorerError):
    """Backend write or read failure.

    Carries the dataset name and the attempted backend so a caller can retry
    with ``force_backend`` set to a different tier.
    """

    code = ErrorCode.STORAGE_ERROR

    def __init__(self, message: str, dataset_name: str, backend: str | None = None) -> None:
        super().__init__(message)
        self.dataset_name: str = dataset_name
        self.backend: str | None = backend

    def details(self) -> dict[str, object]:
        return {"dataset_name": self.dataset_name, "backend": self.backend}

