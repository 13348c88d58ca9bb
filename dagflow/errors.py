"""Error taxonomy for dagflow.

Every failure that crosses a component boundary carries a stable ``code`` plus
a human readable message. ``ErrorInfo`` is the serialisable form stored on
step and run records and carried inside queue messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorInfo(BaseModel):
    """Serialisable error descriptor."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DagflowError(Exception):
    """Base class for all dagflow errors."""

    code = "DAGFLOW_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, details=self.details)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(DagflowError):
    """Malformed graph, definition or configuration. Never retried."""

    code = "VALIDATION_ERROR"


class ConfigurationError(ValidationError):
    code = "CONFIG_ERROR"


class DependencyError(DagflowError):
    """A graph references an unknown step or cannot be ordered."""

    code = "DEPENDENCY_ERROR"


class CycleError(DependencyError):
    code = "CYCLE_DETECTED"


class DecompositionError(DagflowError):
    code = "DECOMPOSITION_ERROR"


class TransientTaskError(DagflowError):
    """Handler error that should be retried according to the retry policy."""

    code = "TASK_ERROR"
    retryable = True


class TaskTimeout(TransientTaskError):
    code = "TASK_TIMEOUT"


class PermanentTaskFailure(DagflowError):
    """A step failed and will not be retried."""

    code = "TASK_FAILED"


class WorkflowTimeout(DagflowError):
    code = "WORKFLOW_TIMEOUT"


class InfrastructureError(DagflowError):
    """The queue or the store is unreachable."""

    code = "INFRASTRUCTURE_ERROR"


class DuplicateRunError(ValidationError):
    """A run with the same id is already stored."""

    code = "RUN_EXISTS"


class WorkflowBatchError(DagflowError):
    code = "BATCH_FAILED"


_BY_CODE = {
    cls.code: cls
    for cls in (
        DagflowError,
        ValidationError,
        ConfigurationError,
        DependencyError,
        CycleError,
        DecompositionError,
        TransientTaskError,
        TaskTimeout,
        PermanentTaskFailure,
        WorkflowTimeout,
        InfrastructureError,
        DuplicateRunError,
        WorkflowBatchError,
    )
}


def error_from_info(info: ErrorInfo) -> DagflowError:
    """Rebuild an exception from its serialised descriptor."""
    cls = _BY_CODE.get(info.code, DagflowError)
    return cls(info.message, code=info.code, details=dict(info.details))


def describe_exception(exc: BaseException) -> ErrorInfo:
    """Convert any exception raised by a handler into an ``ErrorInfo``."""
    if isinstance(exc, DagflowError):
        return exc.to_info()
    return ErrorInfo(
        code=TransientTaskError.code,
        message=str(exc) or exc.__class__.__name__,
        details={"exception": exc.__class__.__name__},
    )


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, DagflowError):
        return exc.retryable
    return True


__all__ = [
    "ErrorInfo",
    "DagflowError",
    "ValidationError",
    "ConfigurationError",
    "DependencyError",
    "CycleError",
    "DecompositionError",
    "TransientTaskError",
    "TaskTimeout",
    "PermanentTaskFailure",
    "WorkflowTimeout",
    "InfrastructureError",
    "WorkflowBatchError",
    "DuplicateRunError",
    "error_from_info",
    "describe_exception",
    "is_retryable",
]
