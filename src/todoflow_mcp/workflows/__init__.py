"""Workflow definitions, progress engine, analysis fallbacks and templates."""

from .analysis import Classification, classify_with_fallback, heuristic_classify, plan_tasks
from .engine import (
    WorkflowMetrics,
    WorkflowProgress,
    WorkflowStore,
    WorkflowValidation,
    approve_current_step,
    awaiting_approval,
    calculate_metrics,
    calculate_progress,
    estimate_duration,
    filter_by_complexity,
    filter_by_status,
    format_minutes,
    mark_completed,
    next_executable_task,
    parse_duration_minutes,
    search_workflows,
    step_requires_approval,
    validate_workflow,
)
from .models import (
    Complexity,
    ExecutionHistoryEntry,
    TaskGuidance,
    TaskType,
    WorkflowApproach,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowMetadata,
    WorkflowTask,
)
from .templates import TemplateLibrary, TemplateLoadError, WorkflowTemplate

__all__ = [
    "Classification",
    "Complexity",
    "ExecutionHistoryEntry",
    "TaskGuidance",
    "TaskType",
    "TemplateLibrary",
    "TemplateLoadError",
    "WorkflowApproach",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowMetadata",
    "WorkflowMetrics",
    "WorkflowProgress",
    "WorkflowStore",
    "WorkflowTask",
    "WorkflowTemplate",
    "WorkflowValidation",
    "approve_current_step",
    "awaiting_approval",
    "calculate_metrics",
    "calculate_progress",
    "classify_with_fallback",
    "estimate_duration",
    "filter_by_complexity",
    "filter_by_status",
    "format_minutes",
    "heuristic_classify",
    "mark_completed",
    "next_executable_task",
    "parse_duration_minutes",
    "plan_tasks",
    "search_workflows",
    "step_requires_approval",
    "validate_workflow",
]
