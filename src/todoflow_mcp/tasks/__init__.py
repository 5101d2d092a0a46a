"""Task models and the status state machine."""

from .models import Priority, Task, TaskHistoryEntry, TaskStatus
from .state_machine import (
    APPROVAL_HOLD_SOURCES,
    HALTED_STATUSES,
    TaskStore,
    VALID_TRANSITIONS,
    allowed_transitions,
    can_transition,
    ensure_transition,
)

__all__ = [
    "APPROVAL_HOLD_SOURCES",
    "HALTED_STATUSES",
    "Priority",
    "Task",
    "TaskHistoryEntry",
    "TaskStatus",
    "TaskStore",
    "VALID_TRANSITIONS",
    "allowed_transitions",
    "can_transition",
    "ensure_transition",
]
