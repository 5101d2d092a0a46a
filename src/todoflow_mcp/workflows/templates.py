"""Generic fallback workflow templates and their YAML loader."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..enums import WorkflowApproach
from .models import TaskGuidance, WorkflowTask


class TemplateLoadError(RuntimeError):
    """Raised when one or more template files cannot be parsed."""


class TemplateStep(BaseModel):
    """One step of a template; ``parent_objective`` is filled in at render time."""

    content: str
    instructions: str = ""
    expected_output: str = ""
    next_step_guidance: str = ""
    validation_criteria: str = ""
    approval_required: bool = False
    recovery_instructions: str = ""
    estimated_duration: str | None = None

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Template step content must not be empty")
        return normalized


class WorkflowTemplate(BaseModel):
    """Ordered generic steps substituted when task generation fails."""

    approach: WorkflowApproach
    title: str = ""
    steps: list[TemplateStep] = Field(min_length=1)

    def render(self, objective: str) -> list[WorkflowTask]:
        parent_objective = f"Complete user request: {objective[:100]}..."
        return [
            WorkflowTask(
                content=step.content,
                estimated_duration=step.estimated_duration,
                guidance=TaskGuidance(
                    parent_objective=parent_objective,
                    instructions=step.instructions,
                    expected_output=step.expected_output,
                    next_step_guidance=step.next_step_guidance,
                    validation_criteria=step.validation_criteria,
                    approval_required=step.approval_required,
                    recovery_instructions=step.recovery_instructions,
                ),
            )
            for step in self.steps
        ]


_SEQUENTIAL = WorkflowTemplate(
    approach=WorkflowApproach.SEQUENTIAL_WORKFLOW,
    title="Plan and execute",
    steps=[
        TemplateStep(
            content="Planning: Break down the task into steps",
            instructions="Analyze the request and break it down into manageable steps",
            expected_output="Step-by-step plan",
            next_step_guidance="Execute the steps",
            validation_criteria="Plan covers all aspects of the request",
            recovery_instructions="Revisit requirements and create more detailed breakdown",
        ),
        TemplateStep(
            content="Execution: Complete the planned steps",
            instructions="Execute each step of the plan systematically",
            expected_output="Completed work",
            next_step_guidance="Task complete",
            validation_criteria="All planned steps completed successfully",
            recovery_instructions="Review completed steps and address any gaps",
        ),
    ],
)

BUILTIN_TEMPLATES: dict[WorkflowApproach, WorkflowTemplate] = {
    WorkflowApproach.MULTI_PHASE_DISCOVERY: WorkflowTemplate(
        approach=WorkflowApproach.MULTI_PHASE_DISCOVERY,
        title="Analyze, discover, implement",
        steps=[
            TemplateStep(
                content="Analysis: Understand requirements and scope",
                instructions="Carefully analyze the user request to understand requirements and scope",
                expected_output="Clear understanding of what needs to be accomplished",
                next_step_guidance="Proceed to research and discovery",
                validation_criteria="Requirements and scope are clearly understood",
                recovery_instructions="Review request and clarify ambiguous requirements",
            ),
            TemplateStep(
                content="Discovery: Research relevant information and patterns",
                instructions=(
                    "Gather necessary information and identify relevant patterns or "
                    "existing solutions"
                ),
                expected_output="Research findings and pattern analysis",
                next_step_guidance="Create implementation plan",
                validation_criteria="Sufficient research completed",
                recovery_instructions="Expand research scope or consult additional sources",
            ),
            TemplateStep(
                content="Implementation: Execute the planned solution",
                instructions="Execute the implementation based on analysis and research",
                expected_output="Completed implementation",
                next_step_guidance="Task complete",
                validation_criteria="Implementation meets requirements",
                recovery_instructions="Review implementation against requirements and iterate",
            ),
        ],
    ),
    WorkflowApproach.APPROVAL_WORKFLOW: WorkflowTemplate(
        approach=WorkflowApproach.APPROVAL_WORKFLOW,
        title="Plan, approve, execute",
        steps=[
            TemplateStep(
                content="Planning: Create detailed implementation plan",
                instructions="Create a comprehensive plan for the request",
                expected_output="Detailed implementation plan",
                next_step_guidance="Submit for approval",
                validation_criteria="Plan covers all requirements",
                approval_required=True,
                recovery_instructions="Refine plan based on feedback and resubmit",
            ),
            TemplateStep(
                content="Execution: Implement the approved plan",
                instructions="Execute the approved implementation plan",
                expected_output="Completed implementation",
                next_step_guidance="Task complete",
                validation_criteria="Implementation matches approved plan",
                recovery_instructions="Review against approved plan and make necessary adjustments",
            ),
        ],
    ),
    WorkflowApproach.SEQUENTIAL_WORKFLOW: _SEQUENTIAL,
    WorkflowApproach.SINGLE_TASK: _SEQUENTIAL,
}


class TemplateLibrary:
    """Built-in templates, optionally overridden by YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._cache: dict[WorkflowApproach, WorkflowTemplate] | None = None

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[WorkflowApproach, WorkflowTemplate]:
        """Merge built-ins with templates from disk.

        Later search paths override earlier ones when approaches collide.
        """

        if self._cache is not None:
            return dict(self._cache)

        templates = dict(BUILTIN_TEMPLATES)
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    template = WorkflowTemplate.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Template validation error in {path}: {exc}")
                    continue

                templates[template.approach] = template

        if errors:
            raise TemplateLoadError("; ".join(errors))

        self._cache = templates
        return dict(templates)

    def get(self, approach: WorkflowApproach | str) -> WorkflowTemplate:
        return self.load_all()[WorkflowApproach(approach)]

    def render(self, approach: WorkflowApproach | str, objective: str) -> list[WorkflowTask]:
        return self.get(approach).render(objective)


__all__ = [
    "BUILTIN_TEMPLATES",
    "TemplateLibrary",
    "TemplateLoadError",
    "TemplateStep",
    "WorkflowTemplate",
]
