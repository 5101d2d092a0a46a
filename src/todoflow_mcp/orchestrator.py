"""Process-wide orchestrator that owns every store and the monitor."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Literal

from pydantic import BaseModel, Field

from .config import TodoflowSettings
from .context import ContextPreservationManager, SubtaskRelationship
from .enums import Complexity, Priority, TaskStatus
from .errors import (
    InvalidInputError,
    InvalidWorkflowStateError,
    NotFoundError,
    TaskNotFoundError,
)
from .monitor import AutoProgressionMonitor
from .sessions import SessionStore
from .storage import (
    EventJournal,
    JournalUnavailableError,
    LoadReport,
    StateSnapshot,
    read_snapshot,
    write_snapshot,
)
from .storage.snapshot import InvalidPolicy
from .tasks import APPROVAL_HOLD_SOURCES, HALTED_STATUSES, Task, TaskStore
from .validation import is_valid_complexity, new_subtask_workflow_id, validate_content
from .workflows import (
    Classification,
    TemplateLibrary,
    WorkflowDefinition,
    WorkflowProgress,
    WorkflowStore,
    WorkflowTask,
    approve_current_step,
    awaiting_approval,
    calculate_progress,
    classify_with_fallback,
    mark_completed,
    next_executable_task,
    plan_tasks,
    validate_workflow,
)
from .workflows.analysis import Classifier, TaskGenerator, approach_for

logger = logging.getLogger(__name__)

AdvanceStatus = Literal["advanced", "completed", "waiting", "failed", "noop"]


class AdvanceOutcome(BaseModel):
    workflow_id: str
    status: AdvanceStatus
    completed_task: WorkflowTask | None = None
    next_task: WorkflowTask | None = None
    result: str | None = None
    progress: WorkflowProgress
    workflow: WorkflowDefinition


class WorkflowStatusView(BaseModel):
    workflow: WorkflowDefinition
    status: str
    progress: WorkflowProgress
    next_steps: list[str]
    execution_context: Any = None
    driving_task_status: TaskStatus | None = None
    is_executing: bool = False
    awaiting_approval: bool = False
    validation_errors: list[str] = Field(default_factory=list)


class SubtaskRollup(BaseModel):
    parent_id: str
    child_id: str
    relationship: SubtaskRelationship
    all_complete: bool
    next_parent_step: str


class ParentReturn(BaseModel):
    parent_id: str
    parent_context: Any = None
    next_parent_step: str
    completed_children: list[str]


class Orchestrator:
    """Owns sessions, workflows, tasks, context and the auto-progression monitor.

    Construct one per process and pass it to whatever needs it. ``shutdown``
    stops the monitor.
    """

    def __init__(
        self,
        settings: TodoflowSettings | None = None,
        *,
        classifier: Classifier | None = None,
        task_generator: TaskGenerator | None = plan_tasks,
        journal: EventJournal | None = None,
        templates: TemplateLibrary | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or TodoflowSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.classifier = classifier
        self.task_generator = task_generator
        self.journal = journal

        self.tasks = TaskStore(
            min_content_length=self.settings.min_content_length,
            max_content_length=self.settings.max_content_length,
            clock=self._clock,
        )
        self.sessions = SessionStore(
            timeout_minutes=self.settings.session_timeout_minutes,
            strict_context=self.settings.strict_session_context,
            clock=self._clock,
        )
        self.workflows = WorkflowStore(
            templates=templates or TemplateLibrary(self.settings.template_paths),
            max_steps=self.settings.max_workflow_steps,
            default_task_minutes=self.settings.default_task_minutes,
            clock=self._clock,
        )
        self.context = ContextPreservationManager()
        self.monitor = AutoProgressionMonitor(
            self,
            interval_seconds=self.settings.monitor_interval_seconds,
            idle_seconds=self.settings.monitor_idle_seconds,
            clock=monotonic,
        )
        self._executing: set[str] = set()
        self._executing_lock = threading.Lock()

    # journal -----------------------------------------------------------------

    def _record(
        self,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.journal is None:
            return
        try:
            self.journal.record_event(
                stream_id=stream_id, event_type=event_type, body=body, metadata=metadata
            )
        except JournalUnavailableError as exc:
            logger.warning(
                "Event journal unavailable",
                extra={"event_type": event_type, "error": str(exc)},
            )

    # analysis ----------------------------------------------------------------

    async def classify(self, text: str) -> Classification:
        return await classify_with_fallback(self.classifier, text)

    # tasks -------------------------------------------------------------------

    def create_task(
        self,
        content: str,
        *,
        priority: Priority | str = Priority.MEDIUM,
        dependencies: Iterable[str] = (),
        tags: Iterable[str] = (),
        session_id: str | None = None,
        workflow_id: str | None = None,
    ) -> Task:
        if session_id is not None:
            self.sessions.get(session_id)
        task = self.tasks.create(
            content,
            priority=priority,
            dependencies=dependencies,
            tags=tags,
            workflow_id=workflow_id,
            session_id=session_id or self.sessions.active_session_id,
        )
        self._record(
            f"task::{task.id}",
            "task_created",
            task.model_dump(mode="json"),
            {"task_id": task.id, "status": task.status.value, "session_id": task.session_id},
        )
        return task

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        agent_id: str = "system",
        notes: str | None = None,
        blocked_reason: str | None = None,
    ) -> Task:
        task = self.tasks.transition(
            task_id, status, agent_id=agent_id, notes=notes, blocked_reason=blocked_reason
        )
        self._record(
            f"task::{task_id}",
            "task_status_changed",
            task.history[-1].model_dump(mode="json"),
            {"task_id": task_id, "status": task.status.value, "agent_id": agent_id},
        )
        return task

    # workflows ---------------------------------------------------------------

    async def create_workflow(
        self,
        objective: str,
        *,
        complexity: Complexity | str | None = None,
        auto_execute: bool = False,
        require_approval: bool = False,
        session_id: str | None = None,
        parent_task_id: str | None = None,
        workflow_id: str | None = None,
    ) -> WorkflowDefinition:
        """Classify ``objective``, generate its steps and register the workflow.

        A driving task is created alongside so the workflow can be halted
        through the status state machine.
        """

        validate_content(
            objective,
            min_length=self.settings.min_content_length,
            max_length=self.settings.max_content_length,
        ).raise_for_field("objective")
        if complexity is not None and not is_valid_complexity(complexity):
            raise InvalidInputError(
                "complexity", f"Invalid complexity '{complexity}'", value=complexity
            )
        if session_id is not None:
            self.sessions.get(session_id)
        else:
            session_id = self.sessions.active_session_id

        if complexity is None:
            classification = await self.classify(objective)
            resolved = classification.complexity
            confidence = classification.confidence
            approach = (
                approach_for(resolved, require_approval=True)
                if require_approval
                else classification.approach
            )
        else:
            resolved = Complexity(complexity)
            confidence = 1.0
            approach = approach_for(resolved, require_approval=require_approval)

        workflow = await self.workflows.create(
            objective.strip(),
            resolved,
            self.task_generator,
            approach=approach,
            auto_execute=auto_execute,
            require_approval=require_approval,
            parent_task_id=parent_task_id,
            session_id=session_id,
            confidence=confidence,
            workflow_id=workflow_id,
        )

        driving = self.tasks.create(
            objective,
            tags=["workflow"],
            workflow_id=workflow.id,
            session_id=session_id,
        )

        def _bind(current: WorkflowDefinition) -> WorkflowDefinition:
            current.metadata.driving_task_id = driving.id
            return current

        workflow = self.workflows.update(workflow.id, _bind)

        if session_id is not None:
            self.sessions.link_workflow(session_id, workflow.id)
            self.sessions.set_execution_state(
                session_id, workflow.id, {"current_task_index": 0, "is_completed": False}
            )
        if auto_execute:
            self.monitor.track(workflow.id)

        self._record(
            f"workflow::{workflow.id}",
            "workflow_created",
            workflow.model_dump(mode="json"),
            {
                "workflow_id": workflow.id,
                "session_id": session_id,
                "complexity": resolved.value,
                "parent_task_id": parent_task_id,
                "task_id": driving.id,
            },
        )
        return workflow

    def is_executing(self, workflow_id: str) -> bool:
        with self._executing_lock:
            return workflow_id in self._executing

    def is_completed(self, workflow_id: str) -> bool:
        """True for completed workflows and for ids that no longer exist."""

        try:
            return self.workflows.get(workflow_id).is_completed
        except NotFoundError:
            return True

    def _begin(self, workflow_id: str) -> None:
        with self._executing_lock:
            if workflow_id in self._executing:
                raise InvalidWorkflowStateError(
                    f"Workflow '{workflow_id}' is already being advanced",
                    details={"id": workflow_id},
                )
            self._executing.add(workflow_id)

    def _end(self, workflow_id: str) -> None:
        with self._executing_lock:
            self._executing.discard(workflow_id)

    def _driving_task(self, workflow: WorkflowDefinition) -> Task | None:
        task_id = workflow.metadata.driving_task_id
        if task_id is None:
            return None
        try:
            return self.tasks.get(task_id)
        except TaskNotFoundError:
            return None

    def _outcome(
        self,
        workflow: WorkflowDefinition,
        status: AdvanceStatus,
        *,
        completed_task: WorkflowTask | None = None,
        result: str | None = None,
    ) -> AdvanceOutcome:
        return AdvanceOutcome(
            workflow_id=workflow.id,
            status=status,
            completed_task=completed_task,
            next_task=workflow.current_task,
            result=result,
            progress=calculate_progress(workflow, self.workflows.default_task_minutes),
            workflow=workflow,
        )

    def advance(
        self,
        workflow_id: str,
        result: str | None = None,
        *,
        success: bool = True,
        auto: bool = False,
        agent_id: str = "system",
    ) -> AdvanceOutcome:
        """Record one step of ``workflow_id``.

        Only one advancement per workflow runs at a time. Result text always
        carries the step id so later steps can name it as a dependency.
        Automatic advancement stops at a step that needs approval and parks
        the driving task in ``awaiting_approval`` until ``approve_step``.
        """

        self._begin(workflow_id)
        try:
            workflow = self.workflows.get(workflow_id)
            if workflow.is_completed:
                return self._outcome(workflow, "noop")

            driving = self._driving_task(workflow)
            if auto and driving is not None and driving.status is TaskStatus.AWAITING_APPROVAL:
                return self._outcome(workflow, "waiting")
            if driving is not None and driving.status in HALTED_STATUSES:
                raise InvalidWorkflowStateError(
                    f"Workflow '{workflow_id}' is halted ({driving.status.value})",
                    details={
                        "id": workflow_id,
                        "task_id": driving.id,
                        "status": driving.status.value,
                    },
                )

            step = next_executable_task(workflow)
            if step is None:
                return self._outcome(workflow, "waiting")
            if auto and awaiting_approval(workflow):
                if driving is not None and driving.status in APPROVAL_HOLD_SOURCES:
                    self._request_approval(workflow, step, driving, agent_id)
                return self._outcome(workflow, "waiting")

            text = result if result is not None else f"Auto-completed: {step.content}"
            if step.id and step.id not in text:
                text = f"[{step.id}] {text}"

            if driving is not None and driving.status in (TaskStatus.PENDING, TaskStatus.WAITING):
                self.tasks.transition(
                    driving.id, TaskStatus.IN_PROGRESS, agent_id=agent_id, notes="Workflow started"
                )

            now = self._clock()
            workflow = self.workflows.update(
                workflow_id,
                lambda current: mark_completed(
                    current, text, success, auto_executed=auto, now=now
                ),
            )
            self._after_step(workflow, step, text, success, agent_id)
            status: AdvanceStatus = (
                "completed" if workflow.is_completed else "advanced" if success else "failed"
            )
            return self._outcome(workflow, status, completed_task=step, result=text)
        finally:
            self._end(workflow_id)
            self.monitor.touch(workflow_id)

    def _after_step(
        self,
        workflow: WorkflowDefinition,
        step: WorkflowTask,
        text: str,
        success: bool,
        agent_id: str,
    ) -> None:
        self.context.save_execution_context(
            workflow.id,
            {
                "workflow_id": workflow.id,
                "current_step": workflow.current_task_index,
                "last_step": step.model_dump(mode="json"),
                "last_result": text,
                "success": success,
                "next_step_plan": workflow.current_task.content if workflow.current_task else "",
                "saved_at": self._clock().isoformat(),
            },
        )
        session_id = workflow.context.session_id
        if session_id is not None and self.sessions.exists(session_id):
            self.sessions.set_execution_state(
                session_id,
                workflow.id,
                {
                    "current_task_index": workflow.current_task_index,
                    "is_completed": workflow.is_completed,
                },
            )

        self._record(
            f"workflow::{workflow.id}",
            "workflow_step",
            {
                "result": text,
                "success": success,
                "task_index": workflow.context.execution_history[-1].task_index,
            },
            {"workflow_id": workflow.id, "success": success, "completed": workflow.is_completed},
        )

        if not workflow.is_completed:
            return

        self.monitor.untrack(workflow.id)
        driving = self._driving_task(workflow)
        if driving is not None and driving.status is TaskStatus.IN_PROGRESS:
            self.tasks.transition(
                driving.id, TaskStatus.COMPLETED, agent_id=agent_id, notes="Workflow completed"
            )
        parent_id = workflow.metadata.parent_task_id
        if parent_id is not None:
            relationship = self.context.complete_subtask(parent_id, workflow.id)
            if relationship is not None and relationship.all_complete:
                logger.info(
                    "All subtasks complete",
                    extra={"parent_id": parent_id, "children": list(relationship.child_ids)},
                )
        logger.info("Workflow completed", extra={"workflow_id": workflow.id})

    async def auto_advance(self, workflow_id: str) -> AdvanceOutcome:
        return self.advance(workflow_id, auto=True, agent_id="auto-progression")

    def _request_approval(
        self,
        workflow: WorkflowDefinition,
        step: WorkflowTask,
        driving: Task,
        agent_id: str,
    ) -> None:
        position = workflow.current_task_index + 1
        self.tasks.hold_for_approval(
            driving.id,
            agent_id=agent_id,
            notes=f"Step {position} requires approval: {step.content}",
        )
        self._record(
            f"workflow::{workflow.id}",
            "approval_requested",
            {"task_index": workflow.current_task_index, "step": step.content},
            {"workflow_id": workflow.id, "task_id": driving.id},
        )
        logger.info(
            "Workflow awaiting approval",
            extra={"workflow_id": workflow.id, "task_index": workflow.current_task_index},
        )

    def approve_step(
        self,
        workflow_id: str,
        notes: str | None = None,
        *,
        agent_id: str = "user",
    ) -> WorkflowStatusView:
        """Approve the current gated step and release the driving task's hold."""

        self._begin(workflow_id)
        try:
            workflow = self.workflows.update(workflow_id, approve_current_step)
            driving = self._driving_task(workflow)
            if driving is not None and driving.status is TaskStatus.AWAITING_APPROVAL:
                self.tasks.transition(
                    driving.id,
                    TaskStatus.IN_PROGRESS,
                    agent_id=agent_id,
                    notes=f"Approved. {notes}" if notes else "Approved",
                )
            self._record(
                f"workflow::{workflow_id}",
                "step_approved",
                {"task_index": workflow.current_task_index, "notes": notes},
                {"workflow_id": workflow_id, "agent_id": agent_id},
            )
        finally:
            self._end(workflow_id)
        logger.info(
            "Workflow step approved",
            extra={"workflow_id": workflow_id, "task_index": workflow.current_task_index},
        )
        return self.workflow_status(workflow_id)

    def workflow_status(self, workflow_id: str) -> WorkflowStatusView:
        workflow = self.workflows.get(workflow_id)
        driving = self._driving_task(workflow)
        upcoming = workflow.tasks[workflow.current_task_index : workflow.current_task_index + 3]
        return WorkflowStatusView(
            workflow=workflow,
            status=workflow.status,
            progress=calculate_progress(workflow, self.workflows.default_task_minutes),
            next_steps=[task.content for task in upcoming],
            execution_context=self.context.restore_execution_context(workflow_id),
            driving_task_status=driving.status if driving is not None else None,
            is_executing=self.is_executing(workflow_id),
            awaiting_approval=awaiting_approval(workflow),
            validation_errors=validate_workflow(workflow, self.workflows.max_steps).errors,
        )

    # subtasks ----------------------------------------------------------------

    def _parent_context(self, parent_id: str) -> Any:
        if self.workflows.exists(parent_id):
            workflow = self.workflows.get(parent_id)
            return {
                "kind": "workflow",
                "id": parent_id,
                "current_task_index": workflow.current_task_index,
                "execution_context": self.context.restore_execution_context(parent_id),
            }
        task = self.tasks.get(parent_id)
        return {"kind": "task", "id": parent_id, "status": task.status.value}

    async def spawn_subtasks(
        self,
        parent_id: str,
        objectives: Iterable[str],
        *,
        next_parent_step: str = "",
        auto_execute: bool = False,
    ) -> SubtaskRelationship:
        """Create one child workflow per objective and track them under ``parent_id``."""

        items = list(objectives)
        if not items:
            raise InvalidInputError("objectives", "At least one subtask objective is required")
        for objective in items:
            validate_content(
                objective,
                min_length=self.settings.min_content_length,
                max_length=self.settings.max_content_length,
            ).raise_for_field("objectives", objective)

        parent_context = self._parent_context(parent_id)
        session_id = None
        if self.workflows.exists(parent_id):
            session_id = self.workflows.get(parent_id).context.session_id

        children: list[str] = []
        for objective in items:
            child = await self.create_workflow(
                objective,
                auto_execute=auto_execute,
                session_id=session_id,
                parent_task_id=parent_id,
                workflow_id=new_subtask_workflow_id(),
            )
            children.append(child.id)
            if child.context.session_id is not None:
                self.sessions.record_parent_child(child.context.session_id, parent_id, child.id)

        relationship = self.context.create_subtask_relationship(
            parent_id, children, parent_context, next_parent_step
        )
        self._record(
            f"subtasks::{parent_id}",
            "subtasks_created",
            relationship.model_dump(mode="json"),
            {"parent_id": parent_id, "children": len(children)},
        )
        return relationship

    def complete_subtask(self, parent_id: str, child_id: str) -> SubtaskRollup:
        relationship = self.context.complete_subtask(parent_id, child_id)
        if relationship is None:
            raise InvalidWorkflowStateError(
                f"No subtasks registered for '{parent_id}'", details={"parent_id": parent_id}
            )
        self._record(
            f"subtasks::{parent_id}",
            "subtask_completed",
            {"child_id": child_id},
            {"parent_id": parent_id, "child_id": child_id},
        )
        return SubtaskRollup(
            parent_id=parent_id,
            child_id=child_id,
            relationship=relationship,
            all_complete=self.context.all_subtasks_complete(parent_id),
            next_parent_step=relationship.next_parent_step,
        )

    def return_to_parent(self, parent_id: str) -> ParentReturn:
        relationship = self.context.get_subtask_relationship(parent_id)
        if relationship is None:
            raise InvalidWorkflowStateError(
                f"No subtasks registered for '{parent_id}'", details={"parent_id": parent_id}
            )
        if not self.context.all_subtasks_complete(parent_id):
            raise InvalidWorkflowStateError(
                f"Subtasks of '{parent_id}' are still pending",
                details={"parent_id": parent_id, "pending": relationship.pending_children},
            )
        return ParentReturn(
            parent_id=parent_id,
            parent_context=self.context.get_parent_context(parent_id),
            next_parent_step=relationship.next_parent_step,
            completed_children=list(relationship.completed_children),
        )

    # persistence -------------------------------------------------------------

    def snapshot(self) -> StateSnapshot:
        execution, relationships, global_context = self.context.export_state()
        return StateSnapshot(
            saved_at=self._clock(),
            active_session_id=self.sessions.active_session_id,
            sessions=self.sessions.list_sessions(),
            workflows=self.workflows.list(),
            tasks=self.tasks.list(),
            subtask_relationships=relationships,
            execution_contexts=execution,
            global_context=global_context,
        )

    def save_state(self, path: Path | None = None) -> Path:
        target = write_snapshot(self.snapshot(), path or self.settings.state_path)
        logger.info("State saved", extra={"path": str(target)})
        return target

    def restore(self, snapshot: StateSnapshot) -> None:
        for session in snapshot.sessions:
            self.sessions.add(session, active=session.id == snapshot.active_session_id)
        for task in snapshot.tasks:
            self.tasks.add(task)
        for workflow in snapshot.workflows:
            self.workflows.add(workflow)
            if workflow.metadata.auto_execute and not workflow.is_completed:
                self.monitor.track(workflow.id)
        self.context.load_state(
            execution=snapshot.execution_contexts,
            relationships=snapshot.subtask_relationships,
            global_context=snapshot.global_context,
        )

    def load_state(
        self, path: Path | None = None, *, on_invalid: InvalidPolicy = "fail"
    ) -> LoadReport:
        source = path or self.settings.state_path
        report = read_snapshot(source, on_invalid=on_invalid)
        self.restore(report.snapshot)
        logger.info(
            "State loaded",
            extra={
                "path": str(source),
                "workflows": len(report.snapshot.workflows),
                "quarantined": len(report.quarantined),
            },
        )
        return report

    async def shutdown(self) -> None:
        await self.monitor.stop()


__all__ = [
    "AdvanceOutcome",
    "Orchestrator",
    "ParentReturn",
    "SubtaskRollup",
    "WorkflowStatusView",
]
