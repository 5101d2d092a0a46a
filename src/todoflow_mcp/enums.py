"""Closed value sets shared by tasks, workflows and validators."""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    STUCK = "stuck"
    WAITING = "waiting"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class WorkflowApproach(str, Enum):
    SINGLE_TASK = "single_task"
    SEQUENTIAL_WORKFLOW = "sequential_workflow"
    MULTI_PHASE_DISCOVERY = "multi_phase_discovery"
    APPROVAL_WORKFLOW = "approval_workflow"


class TaskType(str, Enum):
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    RESEARCH = "research"
    API = "api"
    GENERIC = "generic"
    DOCUMENTATION = "documentation"
    CONFIGURATION = "configuration"
    DISCOVERY = "discovery"


__all__ = ["Complexity", "Priority", "TaskStatus", "TaskType", "WorkflowApproach"]
