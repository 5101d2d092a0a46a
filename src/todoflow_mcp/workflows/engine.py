"""Workflow store and the progress engine that advances workflow cursors."""

from __future__ import annotations

import logging
import math
import re
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable

from pydantic import BaseModel, Field

from ..enums import Complexity, WorkflowApproach
from ..errors import (
    AnalysisUnavailableError,
    InvalidWorkflowStateError,
    WorkflowNotFoundError,
)
from ..validation import new_workflow_id
from .analysis import TaskGenerator, approach_for, coerce_tasks
from .models import (
    ExecutionHistoryEntry,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowMetadata,
    WorkflowTask,
)
from .templates import TemplateLibrary

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 480  # one eight hour workday
DEFAULT_TASK_MINUTES = 60
DEFAULT_MAX_STEPS = 10

_DURATION = re.compile(r"(\d+)\s*(minute|hour|day)", re.IGNORECASE)
_UNIT_MINUTES = {"minute": 1, "hour": MINUTES_PER_HOUR, "day": MINUTES_PER_DAY}


class WorkflowProgress(BaseModel):
    completed_tasks: int
    total_tasks: int
    progress_percentage: int
    current_task_content: str | None
    estimated_time_remaining: str


class WorkflowValidation(BaseModel):
    ok: bool
    errors: list[str] = Field(default_factory=list)


class WorkflowMetrics(BaseModel):
    total: int
    completed: int
    pending: int
    avg_tasks_per_workflow: float
    avg_completion_minutes: int
    complexity_distribution: dict[str, int]


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def parse_duration_minutes(text: str | None) -> int | None:
    """Return minutes for the first ``<N> minute|hour|day`` in ``text``."""

    if not text:
        return None
    match = _DURATION.search(text)
    if match is None:
        return None
    return int(match.group(1)) * _UNIT_MINUTES[match.group(2).lower()]


def format_minutes(minutes: int) -> str:
    if minutes < MINUTES_PER_HOUR:
        return f"{minutes} minutes"
    if minutes < MINUTES_PER_DAY:
        return f"{_round_half_up(minutes / MINUTES_PER_HOUR, 1):g} hours"
    return f"{_round_half_up(minutes / MINUTES_PER_DAY, 1):g} days"


def estimate_minutes(
    tasks: Iterable[WorkflowTask], default_task_minutes: int = DEFAULT_TASK_MINUTES
) -> int:
    """Sum step estimates; only steps without any estimate count the default."""

    total = 0
    for task in tasks:
        if not task.estimated_duration:
            total += default_task_minutes
            continue
        total += parse_duration_minutes(task.estimated_duration) or 0
    return total


def estimate_duration(
    tasks: Iterable[WorkflowTask], default_task_minutes: int = DEFAULT_TASK_MINUTES
) -> str:
    return format_minutes(estimate_minutes(tasks, default_task_minutes))


def dependencies_met(workflow: WorkflowDefinition, task: WorkflowTask) -> bool:
    """True when every dependency string appears in some successful result.

    Matching is substring containment against result text, not id resolution.
    """

    if not task.dependencies:
        return True
    results = [entry.result for entry in workflow.context.execution_history if entry.success]
    return all(any(dependency in result for result in results) for dependency in task.dependencies)


def next_executable_task(workflow: WorkflowDefinition) -> WorkflowTask | None:
    task = workflow.current_task
    if task is None or workflow.is_completed:
        return None
    if not dependencies_met(workflow, task):
        return None
    return task


def step_requires_approval(workflow: WorkflowDefinition, task: WorkflowTask) -> bool:
    """Step guidance decides; steps without guidance follow ``require_approval``."""

    if task.guidance is not None:
        return task.guidance.approval_required
    return workflow.metadata.require_approval


def awaiting_approval(workflow: WorkflowDefinition) -> bool:
    """True when the current step is gated and has not been approved yet."""

    task = workflow.current_task
    if task is None or workflow.is_completed:
        return False
    return (
        step_requires_approval(workflow, task)
        and workflow.current_task_index not in workflow.context.approved_steps
    )


def approve_current_step(workflow: WorkflowDefinition) -> WorkflowDefinition:
    if not awaiting_approval(workflow):
        raise InvalidWorkflowStateError(
            f"Workflow '{workflow.id}' has no step awaiting approval",
            details={"id": workflow.id, "cursor": workflow.current_task_index},
        )
    updated = workflow.model_copy(deep=True)
    updated.context.approved_steps.append(workflow.current_task_index)
    return updated


def mark_completed(
    workflow: WorkflowDefinition,
    result: str,
    success: bool = True,
    *,
    auto_executed: bool | None = None,
    now: datetime | None = None,
) -> WorkflowDefinition:
    """Record an attempt on the current step and return the updated copy.

    Failed attempts are recorded without moving the cursor.
    """

    if workflow.is_completed or workflow.current_task_index >= len(workflow.tasks):
        raise InvalidWorkflowStateError(
            f"Workflow '{workflow.id}' is already completed",
            details={"id": workflow.id},
        )

    timestamp = now or datetime.now(timezone.utc)
    updated = workflow.model_copy(deep=True)
    updated.context.execution_history.append(
        ExecutionHistoryEntry(
            task_index=workflow.current_task_index,
            result=result,
            timestamp=timestamp,
            completed_at=timestamp,
            success=success,
            auto_executed=(
                workflow.metadata.auto_execute if auto_executed is None else auto_executed
            ),
        )
    )
    if success:
        updated.current_task_index = workflow.current_task_index + 1
        if updated.current_task_index >= len(updated.tasks):
            updated.is_completed = True
    return updated


def calculate_progress(
    workflow: WorkflowDefinition, default_task_minutes: int = DEFAULT_TASK_MINUTES
) -> WorkflowProgress:
    total = len(workflow.tasks)
    completed = min(workflow.current_task_index, total)
    percentage = int(_round_half_up(100 * completed / total)) if total else 0
    current = workflow.current_task
    return WorkflowProgress(
        completed_tasks=completed,
        total_tasks=total,
        progress_percentage=percentage,
        current_task_content=current.content if current is not None else None,
        estimated_time_remaining=format_minutes((total - completed) * default_task_minutes),
    )


def validate_workflow(
    workflow: WorkflowDefinition, max_steps: int = DEFAULT_MAX_STEPS
) -> WorkflowValidation:
    """Collect every structural problem instead of stopping at the first."""

    errors: list[str] = []
    if not workflow.id:
        errors.append("Workflow must have an ID")
    if not workflow.tasks:
        errors.append("Workflow must have at least one task")
    if len(workflow.tasks) > max_steps:
        errors.append(f"Workflow cannot have more than {max_steps} tasks")

    for index, task in enumerate(workflow.tasks):
        if not task.content or not task.content.strip():
            errors.append(f"Task {index + 1} must have content")
        for dependency in task.dependencies:
            resolvable = any(
                dependency in earlier.content or earlier.id == dependency
                for earlier in workflow.tasks[:index]
            )
            if not resolvable:
                errors.append(f"Task {index + 1} has invalid dependency: {dependency}")

    return WorkflowValidation(ok=not errors, errors=errors)


def calculate_metrics(workflows: Iterable[WorkflowDefinition]) -> WorkflowMetrics:
    items = list(workflows)
    total = len(items)
    completed = [workflow for workflow in items if workflow.is_completed]

    durations: list[float] = []
    for workflow in completed:
        history = workflow.context.execution_history
        if history:
            elapsed = history[-1].completed_at - history[0].timestamp
            durations.append(elapsed.total_seconds() / 60)

    distribution = {complexity.value: 0 for complexity in Complexity}
    for workflow in items:
        distribution[workflow.metadata.complexity.value] += 1

    return WorkflowMetrics(
        total=total,
        completed=len(completed),
        pending=total - len(completed),
        avg_tasks_per_workflow=(
            _round_half_up(sum(len(workflow.tasks) for workflow in items) / total, 1)
            if total
            else 0.0
        ),
        avg_completion_minutes=(
            int(_round_half_up(sum(durations) / len(durations))) if durations else 0
        ),
        complexity_distribution=distribution,
    )


def search_workflows(
    workflows: Iterable[WorkflowDefinition], query: str
) -> list[WorkflowDefinition]:
    needle = query.lower()
    return [
        workflow
        for workflow in workflows
        if needle in workflow.title.lower()
        or needle in workflow.metadata.original_prompt.lower()
        or any(
            needle in task.content.lower()
            or (task.description is not None and needle in task.description.lower())
            for task in workflow.tasks
        )
    ]


def filter_by_status(
    workflows: Iterable[WorkflowDefinition], status: str
) -> list[WorkflowDefinition]:
    return [workflow for workflow in workflows if workflow.status == status]


def filter_by_complexity(
    workflows: Iterable[WorkflowDefinition], complexity: Complexity | str
) -> list[WorkflowDefinition]:
    wanted = Complexity(complexity)
    return [workflow for workflow in workflows if workflow.metadata.complexity is wanted]


class WorkflowStore:
    """Owns workflow definitions; writes to one workflow are serialised."""

    def __init__(
        self,
        *,
        templates: TemplateLibrary | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        default_task_minutes: int = DEFAULT_TASK_MINUTES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._templates = templates or TemplateLibrary()
        self._max_steps = max_steps
        self._default_task_minutes = default_task_minutes
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._entity_locks: dict[str, threading.Lock] = {}
        self._lock = threading.RLock()

    @property
    def max_steps(self) -> int:
        return self._max_steps

    @property
    def default_task_minutes(self) -> int:
        return self._default_task_minutes

    def _lock_for(self, workflow_id: str) -> threading.Lock:
        with self._lock:
            lock = self._entity_locks.get(workflow_id)
            if lock is None:
                lock = self._entity_locks[workflow_id] = threading.Lock()
            return lock

    async def _generate(
        self,
        objective: str,
        complexity: Complexity,
        task_generator: TaskGenerator | None,
        fallback_approach: WorkflowApproach,
    ) -> tuple[list[WorkflowTask], bool]:
        if task_generator is not None:
            try:
                return coerce_tasks(await task_generator(objective, complexity)), False
            except AnalysisUnavailableError as exc:
                logger.warning(
                    "Task generator output rejected, using template",
                    extra={"error": exc.message, "approach": fallback_approach.value},
                )
            except Exception as exc:
                logger.warning(
                    "Task generator failed, using template",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
        return self._templates.render(fallback_approach, objective), True

    async def create(
        self,
        objective: str,
        complexity: Complexity | str,
        task_generator: TaskGenerator | None,
        *,
        approach: WorkflowApproach | str | None = None,
        auto_execute: bool = False,
        require_approval: bool = False,
        parent_task_id: str | None = None,
        session_id: str | None = None,
        confidence: float = 0.8,
        workflow_id: str | None = None,
    ) -> WorkflowDefinition:
        """Generate tasks for ``objective`` and register a new workflow.

        The generator is awaited once; failures and malformed output fall back
        to the template for ``approach``.
        """

        complexity = Complexity(complexity)
        fallback_approach = (
            WorkflowApproach(approach)
            if approach is not None
            else approach_for(complexity, require_approval=require_approval)
        )
        tasks, used_fallback = await self._generate(
            objective, complexity, task_generator, fallback_approach
        )
        if len(tasks) > self._max_steps:
            logger.warning(
                "Truncating generated workflow",
                extra={"generated": len(tasks), "max_steps": self._max_steps},
            )
            tasks = tasks[: self._max_steps]

        now = self._clock()
        workflow = WorkflowDefinition(
            id=workflow_id or new_workflow_id(),
            title=objective if len(objective) <= 50 else objective[:50] + "...",
            tasks=tasks,
            metadata=WorkflowMetadata(
                complexity=complexity,
                approach=(
                    WorkflowApproach.SEQUENTIAL_WORKFLOW
                    if len(tasks) > 1
                    else WorkflowApproach.SINGLE_TASK
                ),
                original_prompt=objective,
                auto_execute=auto_execute,
                require_approval=require_approval,
                confidence=confidence,
                created_at=now,
                estimated_duration=estimate_duration(tasks, self._default_task_minutes),
                parent_task_id=parent_task_id,
            ),
            context=WorkflowContext(session_id=session_id),
        )
        self.add(workflow)
        logger.info(
            "Workflow created",
            extra={
                "workflow_id": workflow.id,
                "tasks": len(tasks),
                "complexity": complexity.value,
                "fallback": used_fallback,
            },
        )
        return workflow.model_copy(deep=True)

    def add(self, workflow: WorkflowDefinition) -> None:
        with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    def get(self, workflow_id: str) -> WorkflowDefinition:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow.model_copy(deep=True)

    def exists(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._workflows

    def list(self) -> list[WorkflowDefinition]:
        with self._lock:
            return [workflow.model_copy(deep=True) for workflow in self._workflows.values()]

    def update(
        self,
        workflow_id: str,
        mutate: Callable[[WorkflowDefinition], WorkflowDefinition],
    ) -> WorkflowDefinition:
        """Apply ``mutate`` to a copy and store the result, one writer per workflow."""

        with self._lock_for(workflow_id):
            updated = mutate(self.get(workflow_id))
            if updated.current_task_index > len(updated.tasks):
                raise InvalidWorkflowStateError(
                    f"Workflow '{workflow_id}' cursor out of bounds",
                    details={"id": workflow_id, "cursor": updated.current_task_index},
                )
            with self._lock:
                self._workflows[workflow_id] = updated.model_copy(deep=True)
        return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._workflows)


__all__ = [
    "MINUTES_PER_DAY",
    "MINUTES_PER_HOUR",
    "WorkflowMetrics",
    "WorkflowProgress",
    "WorkflowStore",
    "WorkflowValidation",
    "approve_current_step",
    "awaiting_approval",
    "calculate_metrics",
    "calculate_progress",
    "dependencies_met",
    "estimate_duration",
    "estimate_minutes",
    "filter_by_complexity",
    "filter_by_status",
    "format_minutes",
    "mark_completed",
    "next_executable_task",
    "parse_duration_minutes",
    "search_workflows",
    "step_requires_approval",
    "validate_workflow",
]
