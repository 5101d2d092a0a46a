"""Error taxonomy shared by every Todoflow component."""

from __future__ import annotations

from typing import Any


class TodoflowError(RuntimeError):
    """Base error carrying a stable code and optional structured details."""

    code = "OPERATION_FAILED"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidInputError(TodoflowError):
    """Raised when a caller supplies a malformed field."""

    code = "INVALID_INPUT"

    def __init__(self, field: str, message: str, *, value: Any = None) -> None:
        details: dict[str, Any] = {"field": field}
        if value is not None:
            details["value"] = value
        super().__init__(message, details=details)
        self.field = field


class NotFoundError(TodoflowError):
    """Base class for unknown entity identifiers."""

    entity = "entity"

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            f"{self.entity.capitalize()} '{entity_id}' not found",
            details={"entity": self.entity, "id": entity_id},
        )
        self.entity_id = entity_id


class TaskNotFoundError(NotFoundError):
    code = "TODO_NOT_FOUND"
    entity = "task"


class WorkflowNotFoundError(NotFoundError):
    code = "WORKFLOW_NOT_FOUND"
    entity = "workflow"


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"
    entity = "session"


class InvalidStatusTransitionError(TodoflowError):
    """Raised when a status change is not allowed by the transition table."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, task_id: str, source: str, target: str) -> None:
        super().__init__(
            f"Cannot transition task '{task_id}' from {source} to {target}",
            details={"id": task_id, "from": source, "to": target},
        )
        self.source = source
        self.target = target


class InvalidWorkflowStateError(TodoflowError):
    """Raised when a workflow operation conflicts with the workflow's state."""

    code = "INVALID_WORKFLOW_STATE"


class OperationFailedError(TodoflowError):
    """Generic wrapped failure."""

    code = "OPERATION_FAILED"


class AnalysisUnavailableError(TodoflowError):
    """Raised when the classifier or task generator is absent or failing."""

    code = "AI_ANALYSIS_FAILED"


class StateLoadError(TodoflowError):
    """Raised when a persisted state snapshot cannot be restored."""

    code = "STATE_LOAD_FAILED"


def wrap_error(exc: BaseException, operation: str) -> TodoflowError:
    """Return ``exc`` unchanged if it is already typed, else wrap it."""

    if isinstance(exc, TodoflowError):
        return exc
    wrapped = OperationFailedError(
        f"{operation} failed: {exc}",
        details={"operation": operation, "error_type": type(exc).__name__},
    )
    wrapped.__cause__ = exc
    return wrapped


__all__ = [
    "AnalysisUnavailableError",
    "InvalidInputError",
    "InvalidStatusTransitionError",
    "InvalidWorkflowStateError",
    "NotFoundError",
    "OperationFailedError",
    "SessionNotFoundError",
    "StateLoadError",
    "TaskNotFoundError",
    "TodoflowError",
    "WorkflowNotFoundError",
    "wrap_error",
]
