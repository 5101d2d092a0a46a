"""Task status state machine and the task store that enforces it."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable

from ..enums import Priority, TaskStatus
from ..errors import InvalidInputError, InvalidStatusTransitionError, TaskNotFoundError
from ..validation import (
    DEFAULT_MAX_CONTENT_LENGTH,
    DEFAULT_MIN_CONTENT_LENGTH,
    is_valid_task_id,
    new_task_id,
    validate_content,
)
from .models import Task, TaskHistoryEntry

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.BLOCKED}
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.PENDING,
            TaskStatus.STUCK,
            TaskStatus.PAUSED,
            TaskStatus.BLOCKED,
        }
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.ARCHIVED}),
    TaskStatus.ARCHIVED: frozenset(),
    TaskStatus.STUCK: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.PENDING, TaskStatus.CANCELLED}
    ),
    TaskStatus.WAITING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS}),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.AWAITING_APPROVAL: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}
    ),
}

# Statuses from which a workflow's driving task no longer allows advancement.
HALTED_STATUSES = frozenset(
    {
        TaskStatus.CANCELLED,
        TaskStatus.ARCHIVED,
        TaskStatus.BLOCKED,
        TaskStatus.PAUSED,
        TaskStatus.STUCK,
        TaskStatus.AWAITING_APPROVAL,
    }
)

APPROVAL_HOLD_SOURCES = frozenset(
    {TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.WAITING}
)


def coerce_status(value: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as exc:
        raise InvalidInputError(
            "status",
            f"Invalid status '{value}'. Must be one of {sorted(s.value for s in TaskStatus)}",
            value=value,
        ) from exc


def allowed_transitions(status: TaskStatus | str) -> frozenset[TaskStatus]:
    return VALID_TRANSITIONS[coerce_status(status)]


def can_transition(source: TaskStatus | str, target: TaskStatus | str) -> bool:
    return coerce_status(target) in allowed_transitions(source)


def ensure_transition(
    task_id: str, source: TaskStatus | str, target: TaskStatus | str
) -> None:
    if not can_transition(source, target):
        raise InvalidStatusTransitionError(
            task_id, coerce_status(source).value, coerce_status(target).value
        )


class TaskStore:
    """Owns tasks and serialises every mutation per task id."""

    def __init__(
        self,
        *,
        min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._min_content_length = min_content_length
        self._max_content_length = max_content_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: dict[str, Task] = {}
        self._entity_locks: dict[str, threading.Lock] = {}
        self._lock = threading.RLock()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._lock:
            lock = self._entity_locks.get(task_id)
            if lock is None:
                lock = self._entity_locks[task_id] = threading.Lock()
            return lock

    def _require(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def create(
        self,
        content: str,
        *,
        priority: Priority | str = Priority.MEDIUM,
        dependencies: Iterable[str] = (),
        tags: Iterable[str] = (),
        workflow_id: str | None = None,
        session_id: str | None = None,
    ) -> Task:
        validate_content(
            content,
            min_length=self._min_content_length,
            max_length=self._max_content_length,
        ).raise_for_field("content")
        try:
            resolved_priority = Priority(priority)
        except ValueError as exc:
            raise InvalidInputError(
                "priority", f"Invalid priority '{priority}'", value=priority
            ) from exc
        dependency_list = list(dependencies)
        for dependency in dependency_list:
            if not is_valid_task_id(dependency):
                raise InvalidInputError(
                    "dependencies", f"Invalid task id '{dependency}'", value=dependency
                )

        now = self._clock()
        task = Task(
            id=new_task_id(),
            content=content.strip(),
            priority=resolved_priority,
            created_at=now,
            updated_at=now,
            history=[TaskHistoryEntry(timestamp=now, action="created", agent_id="system")],
            dependencies=dependency_list,
            tags=list(tags),
            workflow_id=workflow_id,
            session_id=session_id,
        )
        with self._lock:
            self._tasks[task.id] = task
        logger.debug("Task created", extra={"task_id": task.id, "workflow_id": workflow_id})
        return task.model_copy(deep=True)

    def add(self, task: Task) -> None:
        """Register an existing task, used when restoring persisted state."""

        with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    def get(self, task_id: str) -> Task:
        return self._require(task_id).model_copy(deep=True)

    def list(
        self,
        *,
        session_id: str | None = None,
        statuses: Iterable[TaskStatus | str] | None = None,
    ) -> list[Task]:
        wanted = {coerce_status(status) for status in statuses} if statuses else None
        with self._lock:
            tasks = list(self._tasks.values())
        return [
            task.model_copy(deep=True)
            for task in tasks
            if (session_id is None or task.session_id == session_id)
            and (wanted is None or task.status in wanted)
        ]

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus | str,
        *,
        agent_id: str = "system",
        notes: str | None = None,
        blocked_reason: str | None = None,
    ) -> Task:
        """Move a task to ``new_status``.

        The table check, the history entry and the status change are applied to a
        copy that replaces the stored task in one assignment. When anything fails
        the stored task is untouched.
        """

        target = coerce_status(new_status)
        with self._lock_for(task_id):
            current = self._require(task_id)
            ensure_transition(task_id, current.status, target)

            now = self._clock()
            updated = current.model_copy(deep=True)
            updated.history.append(
                TaskHistoryEntry(
                    timestamp=now,
                    action="status_changed",
                    previous_status=current.status,
                    new_status=target,
                    notes=notes,
                    agent_id=agent_id,
                    duration=(now - current.updated_at).total_seconds(),
                )
            )
            updated.status = target
            updated.updated_at = now
            updated.blocked_reason = blocked_reason if target is TaskStatus.BLOCKED else None

            with self._lock:
                self._tasks[task_id] = updated

        logger.info(
            "Task status changed",
            extra={
                "task_id": task_id,
                "from": current.status.value,
                "to": target.value,
                "agent_id": agent_id,
            },
        )
        return updated.model_copy(deep=True)

    def hold_for_approval(
        self,
        task_id: str,
        *,
        agent_id: str = "system",
        notes: str | None = None,
    ) -> Task:
        """Park an active task in ``awaiting_approval``.

        No table edge leads into ``awaiting_approval``; a hold is placed only
        by the workflow approval gate and released with a normal transition.
        """

        with self._lock_for(task_id):
            current = self._require(task_id)
            if current.status not in APPROVAL_HOLD_SOURCES:
                raise InvalidStatusTransitionError(
                    task_id, current.status.value, TaskStatus.AWAITING_APPROVAL.value
                )

            now = self._clock()
            updated = current.model_copy(deep=True)
            updated.history.append(
                TaskHistoryEntry(
                    timestamp=now,
                    action="approval_requested",
                    previous_status=current.status,
                    new_status=TaskStatus.AWAITING_APPROVAL,
                    notes=notes,
                    agent_id=agent_id,
                    duration=(now - current.updated_at).total_seconds(),
                )
            )
            updated.status = TaskStatus.AWAITING_APPROVAL
            updated.updated_at = now
            updated.blocked_reason = None

            with self._lock:
                self._tasks[task_id] = updated

        logger.info(
            "Task awaiting approval",
            extra={"task_id": task_id, "from": current.status.value, "agent_id": agent_id},
        )
        return updated.model_copy(deep=True)

    def append_history(
        self,
        task_id: str,
        action: str,
        *,
        notes: str | None = None,
        agent_id: str | None = None,
    ) -> Task:
        """Append a non-status history entry."""

        with self._lock_for(task_id):
            updated = self._require(task_id).model_copy(deep=True)
            now = self._clock()
            updated.history.append(
                TaskHistoryEntry(timestamp=now, action=action, notes=notes, agent_id=agent_id)
            )
            updated.updated_at = now
            with self._lock:
                self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


__all__ = [
    "APPROVAL_HOLD_SOURCES",
    "HALTED_STATUSES",
    "TaskStore",
    "VALID_TRANSITIONS",
    "allowed_transitions",
    "can_transition",
    "coerce_status",
    "ensure_transition",
]
