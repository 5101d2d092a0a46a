"""Pure validation predicates and identifier generation."""

from __future__ import annotations

import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from .enums import Complexity, Priority, TaskStatus, TaskType, WorkflowApproach
from .errors import InvalidInputError

DEFAULT_MIN_CONTENT_LENGTH = 3
DEFAULT_MAX_CONTENT_LENGTH = 10000

# Every identifier grammar ever issued stays accepted.
TASK_ID_PATTERNS = (
    re.compile(r"^[a-zA-Z0-9\-_]+$"),
    re.compile(r"^todo-\d+-[a-z0-9]{9}$"),
)
SESSION_ID_PATTERNS = (
    re.compile(r"^[a-zA-Z0-9\-_]+$"),
    re.compile(r"^session_\d+_[a-z0-9]{9}$"),
)
WORKFLOW_ID_PATTERNS = (
    re.compile(r"^workflow-\d+-[a-z0-9]{9}$"),
    re.compile(r"^wf-\d+-[a-z0-9]{9}$"),
    re.compile(r"^workflow-\d+-[a-zA-Z0-9\-_]+$"),
    re.compile(r"^workflow_\d+_[a-z0-9]{9}$"),
    re.compile(r"^subtask_\d+_[a-z0-9]{9}$"),
)

_BASE36 = string.digits + string.ascii_lowercase

ErrorKind = Literal[
    "TooShort",
    "TooLong",
    "OutOfRange",
    "PatternMismatch",
    "MissingKeys",
    "InvalidItem",
    "InvalidType",
]


@dataclass(slots=True, frozen=True)
class ValidationResult:
    ok: bool
    error: str | None = None
    kind: ErrorKind | None = None
    index: int | None = None

    def raise_for_field(self, field: str, value: Any = None) -> None:
        if not self.ok:
            raise InvalidInputError(field, self.error or f"Invalid {field}", value=value)


VALID = ValidationResult(ok=True)


def _matches_any(value: Any, patterns: Iterable[re.Pattern[str]]) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return any(pattern.match(value) for pattern in patterns)


def is_valid_task_id(value: Any) -> bool:
    return _matches_any(value, TASK_ID_PATTERNS)


def is_valid_session_id(value: Any) -> bool:
    return _matches_any(value, SESSION_ID_PATTERNS)


def is_valid_workflow_id(value: Any) -> bool:
    return _matches_any(value, WORKFLOW_ID_PATTERNS)


def validate_content(
    text: Any,
    *,
    min_length: int = DEFAULT_MIN_CONTENT_LENGTH,
    max_length: int = DEFAULT_MAX_CONTENT_LENGTH,
) -> ValidationResult:
    if not isinstance(text, str):
        return ValidationResult(False, "Content must be a string", "InvalidType")
    if len(text.strip()) < min_length:
        return ValidationResult(
            False, f"Content must be at least {min_length} characters", "TooShort"
        )
    if len(text) > max_length:
        return ValidationResult(
            False, f"Content must not exceed {max_length} characters", "TooLong"
        )
    return VALID


def validate_range(
    value: Any, *, minimum: float | None = None, maximum: float | None = None
) -> ValidationResult:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return ValidationResult(False, "Value must be a number", "InvalidType")
    if minimum is not None and value < minimum:
        return ValidationResult(False, f"Value must be >= {minimum}", "OutOfRange")
    if maximum is not None and value > maximum:
        return ValidationResult(False, f"Value must be <= {maximum}", "OutOfRange")
    return VALID


def validate_pattern(value: Any, pattern: str | re.Pattern[str]) -> ValidationResult:
    if not isinstance(value, str):
        return ValidationResult(False, "Value must be a string", "InvalidType")
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
    if not compiled.match(value):
        return ValidationResult(
            False, f"Value does not match pattern {compiled.pattern}", "PatternMismatch"
        )
    return VALID


def validate_object_shape(value: Any, required_keys: Iterable[str]) -> ValidationResult:
    if not isinstance(value, Mapping):
        return ValidationResult(False, "Value must be an object", "InvalidType")
    missing = [key for key in required_keys if key not in value]
    if missing:
        return ValidationResult(
            False, f"Missing required keys: {', '.join(missing)}", "MissingKeys"
        )
    return VALID


def validate_array_of(
    value: Any, item_validator: Callable[[Any], ValidationResult | bool]
) -> ValidationResult:
    """Validate every item, reporting the first failing index."""

    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        return ValidationResult(False, "Value must be an array", "InvalidType")
    for index, item in enumerate(value):
        outcome = item_validator(item)
        if isinstance(outcome, ValidationResult):
            if not outcome.ok:
                return ValidationResult(
                    False,
                    f"Item {index}: {outcome.error}",
                    "InvalidItem",
                    index,
                )
        elif not outcome:
            return ValidationResult(False, f"Item {index} is invalid", "InvalidItem", index)
    return VALID


def _enum_member(enum_cls, value: Any) -> bool:
    if isinstance(value, enum_cls):
        return True
    return isinstance(value, str) and value in {member.value for member in enum_cls}


def is_valid_status(value: Any) -> bool:
    return _enum_member(TaskStatus, value)


def is_valid_priority(value: Any) -> bool:
    return _enum_member(Priority, value)


def is_valid_complexity(value: Any) -> bool:
    return _enum_member(Complexity, value)


def is_valid_approach(value: Any) -> bool:
    return _enum_member(WorkflowApproach, value)


def is_valid_task_type(value: Any) -> bool:
    return _enum_member(TaskType, value)


def _random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def new_task_id() -> str:
    return f"todo-{_now_ms()}-{_random_suffix()}"


def new_session_id() -> str:
    return f"session_{_now_ms()}_{_random_suffix()}"


def new_workflow_id() -> str:
    return f"workflow-{_now_ms()}-{_random_suffix()}"


def new_subtask_workflow_id() -> str:
    return f"subtask_{_now_ms()}_{_random_suffix()}"


__all__ = [
    "DEFAULT_MAX_CONTENT_LENGTH",
    "DEFAULT_MIN_CONTENT_LENGTH",
    "SESSION_ID_PATTERNS",
    "TASK_ID_PATTERNS",
    "VALID",
    "ValidationResult",
    "WORKFLOW_ID_PATTERNS",
    "is_valid_approach",
    "is_valid_complexity",
    "is_valid_priority",
    "is_valid_session_id",
    "is_valid_status",
    "is_valid_task_id",
    "is_valid_task_type",
    "is_valid_workflow_id",
    "new_session_id",
    "new_subtask_workflow_id",
    "new_task_id",
    "new_workflow_id",
    "validate_array_of",
    "validate_content",
    "validate_object_shape",
    "validate_pattern",
    "validate_range",
]
