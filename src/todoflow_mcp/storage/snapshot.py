"""Versioned state snapshots with invariant checks on reload."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from ..context.models import ContextSnapshot, SubtaskRelationship
from ..enums import TaskStatus
from ..errors import StateLoadError
from ..sessions.models import SessionContext
from ..tasks.models import Task
from ..tasks.state_machine import can_transition
from ..workflows.models import WorkflowDefinition

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1

InvalidPolicy = Literal["fail", "quarantine"]


class StateSnapshot(BaseModel):
    """Everything needed to rebuild an orchestrator."""

    schema_version: int = STATE_SCHEMA_VERSION
    saved_at: datetime
    active_session_id: str | None = None
    sessions: list[SessionContext] = Field(default_factory=list)
    workflows: list[WorkflowDefinition] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    subtask_relationships: list[SubtaskRelationship] = Field(default_factory=list)
    execution_contexts: dict[str, ContextSnapshot] = Field(default_factory=dict)
    global_context: dict[str, ContextSnapshot] = Field(default_factory=dict)


@dataclass(slots=True)
class QuarantinedEntity:
    kind: str
    id: str | None
    problems: list[str]
    raw: Any = None


@dataclass(slots=True)
class LoadReport:
    snapshot: StateSnapshot
    quarantined: list[QuarantinedEntity] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.quarantined


def task_problems(task: Task) -> list[str]:
    """Replay a task's history against the transition table."""

    problems: list[str] = []
    status = TaskStatus.PENDING
    for position, entry in enumerate(task.history):
        if entry.new_status is None:
            continue
        if entry.previous_status is not None and entry.previous_status is not status:
            problems.append(
                f"history[{position}] starts from {entry.previous_status.value} "
                f"but task was {status.value}"
            )
        if not can_transition(status, entry.new_status):
            problems.append(
                f"history[{position}] {status.value} -> {entry.new_status.value} is not allowed"
            )
        status = entry.new_status
    if status is not task.status:
        problems.append(f"status {task.status.value} does not match history ({status.value})")
    return problems


def workflow_problems(workflow: WorkflowDefinition) -> list[str]:
    problems: list[str] = []
    total = len(workflow.tasks)
    cursor = workflow.current_task_index
    if not 0 <= cursor <= total:
        problems.append(f"cursor {cursor} outside 0..{total}")
    if workflow.is_completed and cursor != total:
        problems.append(f"completed workflow has cursor {cursor} of {total}")
    if not workflow.is_completed and total and cursor >= total:
        problems.append("cursor reached the end but workflow is not completed")
    successes = sum(1 for entry in workflow.context.execution_history if entry.success)
    if successes != cursor:
        problems.append(f"{successes} successful steps recorded but cursor is {cursor}")
    return problems


def _validate_items(
    kind: str,
    model: type[BaseModel],
    items: list[Any],
    quarantined: list[QuarantinedEntity],
) -> list[Any]:
    valid: list[Any] = []
    for raw in items:
        entity_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            entity = model.model_validate(raw)
        except ValidationError as exc:
            quarantined.append(QuarantinedEntity(kind, entity_id, [str(exc)], raw))
            continue
        problems: list[str] = []
        if isinstance(entity, Task):
            problems = task_problems(entity)
        elif isinstance(entity, WorkflowDefinition):
            problems = workflow_problems(entity)
        if problems:
            quarantined.append(QuarantinedEntity(kind, entity_id, problems, raw))
            continue
        valid.append(entity)
    return valid


def parse_snapshot(document: Any, *, on_invalid: InvalidPolicy = "fail") -> LoadReport:
    """Rebuild a snapshot from decoded JSON.

    With ``on_invalid="fail"`` any broken entity aborts the whole load; with
    ``"quarantine"`` broken entities are left out and listed in the report.
    """

    if not isinstance(document, dict):
        raise StateLoadError("State document must be a JSON object")
    version = document.get("schema_version")
    if version != STATE_SCHEMA_VERSION:
        raise StateLoadError(
            f"Unsupported state schema version {version!r}",
            details={"expected": STATE_SCHEMA_VERSION, "found": version},
        )

    quarantined: list[QuarantinedEntity] = []
    sessions = _validate_items(
        "session", SessionContext, document.get("sessions") or [], quarantined
    )
    workflows = _validate_items(
        "workflow", WorkflowDefinition, document.get("workflows") or [], quarantined
    )
    tasks = _validate_items("task", Task, document.get("tasks") or [], quarantined)
    relationships = _validate_items(
        "subtask_relationship",
        SubtaskRelationship,
        document.get("subtask_relationships") or [],
        quarantined,
    )

    active_id = document.get("active_session_id")
    if active_id is not None and active_id not in {session.id for session in sessions}:
        quarantined.append(
            QuarantinedEntity("active_session", active_id, ["active session was not loaded"])
        )
        active_id = None

    if quarantined and on_invalid == "fail":
        summary = "; ".join(
            f"{item.kind} {item.id or '?'}: {', '.join(item.problems)}" for item in quarantined
        )
        raise StateLoadError(
            f"State snapshot failed validation: {summary}",
            details={"entities": [{"kind": item.kind, "id": item.id} for item in quarantined]},
        )

    try:
        snapshot = StateSnapshot.model_validate(
            {
                "schema_version": version,
                "saved_at": document.get("saved_at"),
                "active_session_id": active_id,
                "execution_contexts": document.get("execution_contexts") or {},
                "global_context": document.get("global_context") or {},
            }
        )
    except ValidationError as exc:
        raise StateLoadError(f"State snapshot header is invalid: {exc}") from exc

    snapshot.sessions = sessions
    snapshot.workflows = workflows
    snapshot.tasks = tasks
    snapshot.subtask_relationships = relationships

    for item in quarantined:
        logger.warning(
            "Quarantined entity during state load",
            extra={"kind": item.kind, "entity_id": item.id, "problems": item.problems},
        )
    return LoadReport(snapshot=snapshot, quarantined=quarantined)


def read_snapshot(path: Path, *, on_invalid: InvalidPolicy = "fail") -> LoadReport:
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise StateLoadError(f"State file {path} does not exist") from exc
    except json.JSONDecodeError as exc:
        raise StateLoadError(f"State file {path} is not valid JSON: {exc}") from exc
    return parse_snapshot(document, on_invalid=on_invalid)


def write_snapshot(snapshot: StateSnapshot, path: Path) -> Path:
    """Write ``snapshot`` via a temporary file so readers never see a partial file."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temporary = target.with_name(target.name + ".tmp")
    temporary.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    os.replace(temporary, target)
    return target


__all__ = [
    "InvalidPolicy",
    "LoadReport",
    "QuarantinedEntity",
    "STATE_SCHEMA_VERSION",
    "StateSnapshot",
    "parse_snapshot",
    "read_snapshot",
    "task_problems",
    "workflow_problems",
    "write_snapshot",
]
