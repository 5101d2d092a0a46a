"""Request classification and task generation, with deterministic fallbacks."""

from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from ..enums import Complexity, TaskType, WorkflowApproach
from ..errors import AnalysisUnavailableError
from .models import WorkflowTask

logger = logging.getLogger(__name__)

_CODE_TERMS = re.compile(
    r"\b(implement|code|function|class|api|database|frontend|backend)\b", re.IGNORECASE
)
_COMPLEX_TERMS = re.compile(
    r"\b(system|architecture|integration|workflow|process|pipeline)\b", re.IGNORECASE
)
_TASK_TYPE_RULES: tuple[tuple[TaskType, re.Pattern[str]], ...] = (
    (
        TaskType.IMPLEMENTATION,
        re.compile(r"\b(implement|create|build|develop|code|program)\b", re.IGNORECASE),
    ),
    (TaskType.TESTING, re.compile(r"\b(test|testing|verify|validate|check)\b", re.IGNORECASE)),
    (
        TaskType.RESEARCH,
        re.compile(r"\b(research|investigate|analyze|explore|discover)\b", re.IGNORECASE),
    ),
    (TaskType.API, re.compile(r"\b(api|endpoint|service|request|response)\b", re.IGNORECASE)),
)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")

FALLBACK_CONFIDENCE = 0.3


class Classification(BaseModel):
    complexity: Complexity
    task_type: TaskType = TaskType.GENERIC
    approach: WorkflowApproach | None = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    reasoning: str = ""
    fallback: bool = False

    @model_validator(mode="after")
    def _default_approach(self) -> "Classification":
        if self.approach is None:
            self.approach = approach_for(self.complexity)
        return self


Classifier = Callable[[str], Union[Classification, dict[str, Any], Awaitable[Any]]]
TaskGenerator = Callable[[str, Complexity], Awaitable[Any]]


def _word_count(text: str) -> int:
    return len(text.split())


def heuristic_complexity(text: str) -> Complexity:
    words = _word_count(text)
    if words > 50 and _COMPLEX_TERMS.search(text):
        return Complexity.VERY_COMPLEX
    if words > 25 and _CODE_TERMS.search(text):
        return Complexity.COMPLEX
    if words > 10:
        return Complexity.MEDIUM
    return Complexity.SIMPLE


def heuristic_task_type(text: str) -> TaskType:
    for task_type, pattern in _TASK_TYPE_RULES:
        if pattern.search(text):
            return task_type
    return TaskType.GENERIC


def approach_for(complexity: Complexity, *, require_approval: bool = False) -> WorkflowApproach:
    if require_approval:
        return WorkflowApproach.APPROVAL_WORKFLOW
    if complexity is Complexity.VERY_COMPLEX:
        return WorkflowApproach.MULTI_PHASE_DISCOVERY
    if complexity is Complexity.SIMPLE:
        return WorkflowApproach.SINGLE_TASK
    return WorkflowApproach.SEQUENTIAL_WORKFLOW


def heuristic_classify(text: str) -> Classification:
    """Classify ``text`` from word counts and keyword presence alone."""

    complexity = heuristic_complexity(text)
    task_type = heuristic_task_type(text)
    return Classification(
        complexity=complexity,
        task_type=task_type,
        approach=approach_for(complexity),
        confidence=FALLBACK_CONFIDENCE,
        reasoning=f"{_word_count(text)} words, {task_type.value} keywords",
        fallback=True,
    )


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def classify_with_fallback(classifier: Classifier | None, text: str) -> Classification:
    """Run ``classifier`` and fall back to the heuristic when it is absent or fails."""

    if classifier is None:
        return heuristic_classify(text)
    try:
        raw = await _resolve(classifier(text))
        if isinstance(raw, Classification):
            return raw
        return Classification.model_validate(raw)
    except (ValidationError, AnalysisUnavailableError) as exc:
        logger.warning("Classifier output rejected, using heuristics", extra={"error": str(exc)})
    except Exception as exc:
        logger.warning(
            "Classifier failed, using heuristics",
            extra={"error": str(exc), "error_type": type(exc).__name__},
        )
    return heuristic_classify(text)


def coerce_tasks(raw: Any) -> list[WorkflowTask]:
    """Validate generator output, raising ``AnalysisUnavailableError`` when malformed."""

    if not isinstance(raw, (list, tuple)) or not raw:
        raise AnalysisUnavailableError(
            "Task generator returned no tasks", details={"type": type(raw).__name__}
        )
    tasks: list[WorkflowTask] = []
    for index, item in enumerate(raw):
        try:
            task = item if isinstance(item, WorkflowTask) else WorkflowTask.model_validate(item)
        except ValidationError as exc:
            raise AnalysisUnavailableError(
                f"Task generator returned a malformed task at index {index}",
                details={"index": index, "error": str(exc)},
            ) from exc
        if not task.content.strip():
            raise AnalysisUnavailableError(
                f"Task generator returned an empty task at index {index}",
                details={"index": index},
            )
        tasks.append(task.model_copy(deep=True))
    return tasks


async def plan_tasks(objective: str, complexity: Complexity) -> list[WorkflowTask]:
    """Built-in task generator used when no external generator is configured."""

    complexity = Complexity(complexity)
    if complexity is Complexity.SIMPLE:
        return [
            WorkflowTask(
                id="task_1",
                content=objective,
                description=f"Complete: {objective}",
                estimated_duration="10-30 minutes",
            )
        ]

    if _CODE_TERMS.search(objective) or _COMPLEX_TERMS.search(objective):
        return [
            WorkflowTask(
                id="task_1",
                content=f"Analyze requirements: {objective}",
                description="Break down requirements and create technical specification",
                estimated_duration="15-30 minutes",
            ),
            WorkflowTask(
                id="task_2",
                content="Design solution architecture",
                description="Create high-level design and implementation plan",
                estimated_duration="30-60 minutes",
                dependencies=["task_1"],
            ),
            WorkflowTask(
                id="task_3",
                content="Implement core functionality",
                description="Develop main features and components",
                estimated_duration="1-2 hours",
                dependencies=["task_2"],
            ),
            WorkflowTask(
                id="task_4",
                content="Test and validate solution",
                description="Comprehensive testing and quality assurance",
                estimated_duration="30-60 minutes",
                dependencies=["task_3"],
            ),
        ]

    sentences = [part.strip() for part in _SENTENCE_SPLIT.split(objective) if part.strip()]
    return [
        WorkflowTask(
            id=f"task_{index}",
            content=sentence,
            description=f"Complete step: {sentence}",
            estimated_duration="15-30 minutes",
            dependencies=[f"task_{index - 1}"] if index > 1 else [],
        )
        for index, sentence in enumerate(sentences, start=1)
    ]


__all__ = [
    "Classification",
    "Classifier",
    "FALLBACK_CONFIDENCE",
    "TaskGenerator",
    "approach_for",
    "classify_with_fallback",
    "coerce_tasks",
    "heuristic_classify",
    "heuristic_complexity",
    "heuristic_task_type",
    "plan_tasks",
]
