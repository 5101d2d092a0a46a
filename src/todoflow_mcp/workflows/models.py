"""Workflow definition models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..context.models import ContextSnapshot
from ..enums import Complexity, TaskType, WorkflowApproach


class TaskGuidance(BaseModel):
    """Instructions attached to a workflow step for the executing agent."""

    parent_objective: str = ""
    instructions: str = ""
    expected_output: str = ""
    next_step_guidance: str = ""
    validation_criteria: str = ""
    approval_required: bool = False
    recovery_instructions: str = ""


class WorkflowTask(BaseModel):
    """One step of a workflow."""

    id: str | None = None
    content: str
    description: str | None = None
    estimated_duration: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    guidance: TaskGuidance | None = None

    @field_validator("dependencies", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return list(value)


class WorkflowMetadata(BaseModel):
    complexity: Complexity
    approach: WorkflowApproach
    original_prompt: str
    auto_execute: bool = False
    require_approval: bool = False
    confidence: float = 0.8
    created_at: datetime
    estimated_duration: str = ""
    parent_task_id: str | None = None
    driving_task_id: str | None = None


class ExecutionHistoryEntry(BaseModel):
    """One advancement attempt; failed attempts are recorded but do not move the cursor."""

    task_index: int
    result: str
    timestamp: datetime
    completed_at: datetime
    success: bool = True
    auto_executed: bool = False


class WorkflowContext(BaseModel):
    execution_history: list[ExecutionHistoryEntry] = Field(default_factory=list)
    session_id: str | None = None
    approved_steps: list[int] = Field(default_factory=list)
    preserved_state: dict[str, ContextSnapshot] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """Ordered task sequence advanced by a cursor."""

    id: str
    title: str
    tasks: list[WorkflowTask]
    metadata: WorkflowMetadata
    current_task_index: int = 0
    is_completed: bool = False
    context: WorkflowContext = Field(default_factory=WorkflowContext)

    @property
    def status(self) -> str:
        if self.is_completed:
            return "completed"
        if self.current_task_index > 0:
            return "in_progress"
        return "pending"

    @property
    def current_task(self) -> WorkflowTask | None:
        if self.current_task_index < len(self.tasks):
            return self.tasks[self.current_task_index]
        return None


__all__ = [
    "Complexity",
    "ExecutionHistoryEntry",
    "TaskGuidance",
    "TaskType",
    "WorkflowApproach",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowMetadata",
    "WorkflowTask",
]
