"""Task models tracked by the status state machine."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ..enums import Priority, TaskStatus


class TaskHistoryEntry(BaseModel):
    """Single append-only record in a task's history log."""

    timestamp: datetime
    action: str
    previous_status: TaskStatus | None = None
    new_status: TaskStatus | None = None
    notes: str | None = None
    agent_id: str | None = None
    duration: float | None = Field(
        default=None, description="Seconds spent in the previous status."
    )


class Task(BaseModel):
    """A unit of trackable work."""

    id: str
    content: str
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    created_at: datetime
    updated_at: datetime
    history: list[TaskHistoryEntry] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    workflow_id: str | None = None
    session_id: str | None = None
    blocked_reason: str | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value):
        if value is None:
            return []
        seen: list[str] = []
        for tag in value:
            if tag not in seen:
                seen.append(tag)
        return seen


__all__ = ["Priority", "Task", "TaskHistoryEntry", "TaskStatus"]
