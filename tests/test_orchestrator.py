from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from todoflow_mcp.config import TodoflowSettings
from todoflow_mcp.enums import Complexity, TaskStatus
from todoflow_mcp.errors import (
    InvalidInputError,
    InvalidWorkflowStateError,
    SessionNotFoundError,
)
from todoflow_mcp.orchestrator import Orchestrator
from todoflow_mcp.workflows import Classification

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_orchestrator(**kwargs) -> Orchestrator:
    kwargs.setdefault("clock", lambda: NOW)
    return Orchestrator(TodoflowSettings(), **kwargs)


def fixed_generator(tasks):
    async def generate(objective, complexity):
        return tasks

    return generate


def test_create_workflow_binds_driving_task_and_session() -> None:
    orchestrator = make_orchestrator()
    session_id = orchestrator.sessions.create_session("feature work")
    orchestrator.sessions.activate_session(session_id)

    workflow = asyncio.run(
        orchestrator.create_workflow("Build the billing api integration", complexity="medium")
    )

    assert [task.id for task in workflow.tasks] == ["task_1", "task_2", "task_3", "task_4"]
    assert workflow.metadata.confidence == 1.0
    assert workflow.context.session_id == session_id
    assert orchestrator.sessions.session_workflows(session_id) == [workflow.id]
    assert orchestrator.sessions.get_execution_state(session_id, workflow.id) == {
        "current_task_index": 0,
        "is_completed": False,
    }

    driving = orchestrator.tasks.get(workflow.metadata.driving_task_id)
    assert driving.workflow_id == workflow.id
    assert driving.tags == ["workflow"]
    assert driving.status is TaskStatus.PENDING


def test_advancing_chained_steps_to_completion() -> None:
    orchestrator = make_orchestrator()
    workflow = asyncio.run(
        orchestrator.create_workflow("Build the billing api integration", complexity="medium")
    )

    statuses = [orchestrator.advance(workflow.id, "done").status for _ in range(4)]

    assert statuses == ["advanced", "advanced", "advanced", "completed"]
    final = orchestrator.workflows.get(workflow.id)
    assert final.is_completed
    assert [entry.result for entry in final.context.execution_history][0] == "[task_1] done"

    driving = orchestrator.tasks.get(final.metadata.driving_task_id)
    assert driving.status is TaskStatus.COMPLETED

    context = orchestrator.context.restore_execution_context(workflow.id)
    assert context["current_step"] == 4
    assert context["last_result"] == "[task_4] done"

    noop = orchestrator.advance(workflow.id, "again")
    assert noop.status == "noop"
    assert noop.progress.progress_percentage == 100


def test_failed_step_keeps_cursor_and_reports_failed() -> None:
    orchestrator = make_orchestrator(
        task_generator=fixed_generator([{"content": "Flaky"}, {"content": "After"}])
    )
    workflow = asyncio.run(orchestrator.create_workflow("Retry a flaky step", complexity="medium"))

    outcome = orchestrator.advance(workflow.id, "timed out", success=False)

    assert outcome.status == "failed"
    assert outcome.workflow.current_task_index == 0
    assert outcome.next_task.content == "Flaky"


def test_unmet_dependency_reports_waiting() -> None:
    orchestrator = make_orchestrator(
        task_generator=fixed_generator(
            [{"content": "A"}, {"content": "B", "dependencies": ["never-produced"]}]
        )
    )
    workflow = asyncio.run(orchestrator.create_workflow("Blocked second step", complexity="medium"))

    assert orchestrator.advance(workflow.id, "done").status == "advanced"
    waiting = orchestrator.advance(workflow.id, "done")

    assert waiting.status == "waiting"
    assert waiting.workflow.current_task_index == 1


def test_halted_driving_task_blocks_advancement() -> None:
    orchestrator = make_orchestrator(
        task_generator=fixed_generator([{"content": "One"}, {"content": "Two"}])
    )
    workflow = asyncio.run(orchestrator.create_workflow("Pause in the middle", complexity="medium"))
    orchestrator.advance(workflow.id, "first")
    driving_id = workflow.metadata.driving_task_id

    orchestrator.update_task_status(driving_id, "paused", notes="waiting for reviewer")
    with pytest.raises(InvalidWorkflowStateError):
        orchestrator.advance(workflow.id, "second")
    assert orchestrator.is_executing(workflow.id) is False

    orchestrator.update_task_status(driving_id, "in_progress")
    assert orchestrator.advance(workflow.id, "second").status == "completed"


def test_concurrent_advance_is_rejected() -> None:
    orchestrator = make_orchestrator()
    workflow = asyncio.run(orchestrator.create_workflow("Guard re-entry", complexity="simple"))

    orchestrator._begin(workflow.id)
    try:
        with pytest.raises(InvalidWorkflowStateError):
            orchestrator.advance(workflow.id, "racing")
    finally:
        orchestrator._end(workflow.id)

    assert orchestrator.advance(workflow.id, "alone").status == "completed"


def test_classifier_and_generator_failures_fall_back(caplog) -> None:
    def classifier(text: str):
        raise RuntimeError("classifier offline")

    async def generator(objective, complexity):
        raise RuntimeError("generator offline")

    caplog.set_level("WARNING")
    orchestrator = make_orchestrator(classifier=classifier, task_generator=generator)

    workflow = asyncio.run(orchestrator.create_workflow("Tidy up the backlog"))

    assert workflow.metadata.complexity is Complexity.SIMPLE
    assert workflow.metadata.confidence == 0.3
    assert len(workflow.tasks) == 2
    assert "Classifier failed" in caplog.text
    assert "Task generator failed" in caplog.text


def test_classifier_result_drives_complexity() -> None:
    async def classifier(text: str):
        return {"complexity": "very_complex", "confidence": 0.9}

    orchestrator = make_orchestrator(classifier=classifier, task_generator=None)
    workflow = asyncio.run(orchestrator.create_workflow("Short but hard"))

    assert workflow.metadata.complexity is Complexity.VERY_COMPLEX
    assert workflow.metadata.confidence == 0.9
    assert workflow.tasks[0].content.startswith("Analysis")


def test_require_approval_uses_approval_template() -> None:
    orchestrator = make_orchestrator(task_generator=None)
    workflow = asyncio.run(
        orchestrator.create_workflow("Change production config", require_approval=True)
    )

    assert workflow.tasks[0].guidance.approval_required is True
    assert workflow.metadata.require_approval is True


def test_monitor_holds_gated_step_until_approved() -> None:
    monotonic = FakeMonotonic()
    orchestrator = make_orchestrator(
        monotonic=monotonic,
        task_generator=fixed_generator([{"content": "Draft change"}, {"content": "Apply change"}]),
    )
    workflow = asyncio.run(
        orchestrator.create_workflow(
            "Rotate credentials",
            complexity="medium",
            auto_execute=True,
            require_approval=True,
        )
    )
    driving_id = workflow.metadata.driving_task_id

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == []

    held = orchestrator.workflow_status(workflow.id)
    assert held.workflow.current_task_index == 0
    assert held.awaiting_approval is True
    assert held.driving_task_status is TaskStatus.AWAITING_APPROVAL
    assert orchestrator.tasks.get(driving_id).history[-1].action == "approval_requested"
    assert orchestrator.monitor.tracked() == [workflow.id]

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == []
    with pytest.raises(InvalidWorkflowStateError):
        orchestrator.advance(workflow.id, "skip the gate")

    approved = orchestrator.approve_step(workflow.id, "looks good")
    assert approved.awaiting_approval is False
    assert approved.driving_task_status is TaskStatus.IN_PROGRESS
    assert orchestrator.tasks.get(driving_id).history[-1].notes == "Approved. looks good"

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == [workflow.id]
    assert orchestrator.workflows.get(workflow.id).current_task_index == 1

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == []
    assert orchestrator.tasks.get(driving_id).status is TaskStatus.AWAITING_APPROVAL


def test_template_gate_applies_only_to_flagged_steps() -> None:
    monotonic = FakeMonotonic()
    orchestrator = make_orchestrator(monotonic=monotonic, task_generator=None)
    workflow = asyncio.run(
        orchestrator.create_workflow(
            "Change production config", auto_execute=True, require_approval=True
        )
    )
    flags = [task.guidance.approval_required for task in workflow.tasks]
    assert flags[0] is True
    assert not any(flags[1:])

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == []
    orchestrator.approve_step(workflow.id)

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == [workflow.id]
    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == [workflow.id]
    assert orchestrator.workflows.get(workflow.id).is_completed
    assert orchestrator.monitor.tracked() == []


def test_manual_advance_ignores_gate_until_held() -> None:
    orchestrator = make_orchestrator(
        task_generator=fixed_generator([{"content": "Draft change"}, {"content": "Apply change"}])
    )
    workflow = asyncio.run(
        orchestrator.create_workflow("Rotate credentials", require_approval=True)
    )

    outcome = orchestrator.advance(workflow.id, "drafted by hand")

    assert outcome.status == "advanced"
    assert orchestrator.workflow_status(workflow.id).awaiting_approval is True


def test_approve_step_without_gate_is_rejected() -> None:
    orchestrator = make_orchestrator(task_generator=fixed_generator([{"content": "Only step"}]))
    workflow = asyncio.run(orchestrator.create_workflow("Plain work", complexity="simple"))

    with pytest.raises(InvalidWorkflowStateError):
        orchestrator.approve_step(workflow.id)
    assert orchestrator.is_executing(workflow.id) is False


def test_create_workflow_validates_inputs() -> None:
    orchestrator = make_orchestrator()

    with pytest.raises(InvalidInputError):
        asyncio.run(orchestrator.create_workflow("no"))
    with pytest.raises(InvalidInputError):
        asyncio.run(orchestrator.create_workflow("Valid objective", complexity="trivial"))
    with pytest.raises(SessionNotFoundError):
        asyncio.run(orchestrator.create_workflow("Valid objective", session_id="ghost"))

    assert orchestrator.workflows.list() == []


def test_subtasks_roll_up_and_return_to_parent() -> None:
    orchestrator = make_orchestrator()
    session_id = orchestrator.sessions.create_session("subtasks")
    orchestrator.sessions.activate_session(session_id)
    parent = asyncio.run(
        orchestrator.create_workflow("Build the billing api integration", complexity="medium")
    )
    orchestrator.advance(parent.id, "requirements captured")

    relationship = asyncio.run(
        orchestrator.spawn_subtasks(
            parent.id,
            ["Write unit tests", "Update the docs"],
            next_parent_step="Design solution architecture",
        )
    )
    children = list(relationship.child_ids)
    assert len(children) == 2
    assert all(child.startswith("subtask_") for child in children)
    assert orchestrator.sessions.child_tasks(session_id, parent.id) == children

    with pytest.raises(InvalidWorkflowStateError) as excinfo:
        orchestrator.return_to_parent(parent.id)
    assert excinfo.value.details["pending"] == children

    for child in children:
        assert orchestrator.advance(child, "finished").status == "completed"

    back = orchestrator.return_to_parent(parent.id)
    assert back.completed_children == children
    assert back.next_parent_step == "Design solution architecture"
    assert back.parent_context["kind"] == "workflow"
    assert back.parent_context["current_task_index"] == 1


def test_subtasks_under_plain_task_parent() -> None:
    orchestrator = make_orchestrator()
    task = orchestrator.create_task("Coordinate the launch")

    relationship = asyncio.run(orchestrator.spawn_subtasks(task.id, ["Draft announcement"]))
    child = relationship.child_ids[0]

    rollup = orchestrator.complete_subtask(task.id, child)
    assert rollup.all_complete is True
    assert orchestrator.return_to_parent(task.id).parent_context == {
        "kind": "task",
        "id": task.id,
        "status": "pending",
    }

    with pytest.raises(InvalidInputError):
        asyncio.run(orchestrator.spawn_subtasks(task.id, []))
    with pytest.raises(InvalidWorkflowStateError):
        orchestrator.complete_subtask("unknown-parent", child)


def test_monitor_auto_advances_idle_workflow() -> None:
    monotonic = FakeMonotonic()
    orchestrator = make_orchestrator(
        monotonic=monotonic,
        task_generator=fixed_generator([{"content": "First"}, {"content": "Second"}]),
    )
    workflow = asyncio.run(
        orchestrator.create_workflow("Run unattended", complexity="medium", auto_execute=True)
    )
    assert orchestrator.monitor.tracked() == [workflow.id]

    monotonic.now += 11
    assert asyncio.run(orchestrator.monitor.tick()) == [workflow.id]

    current = orchestrator.workflows.get(workflow.id)
    entry = current.context.execution_history[-1]
    assert current.current_task_index == 1
    assert entry.auto_executed is True
    assert entry.result.startswith("Auto-completed: First")


def test_monitor_tick_after_completion_is_a_noop() -> None:
    monotonic = FakeMonotonic()
    orchestrator = make_orchestrator(
        monotonic=monotonic,
        task_generator=fixed_generator([{"content": "First"}, {"content": "Second"}]),
    )
    workflow = asyncio.run(
        orchestrator.create_workflow("Finish then idle", complexity="medium", auto_execute=True)
    )
    orchestrator.advance(workflow.id, "one")
    orchestrator.advance(workflow.id, "two")
    orchestrator.monitor.track(workflow.id)

    monotonic.now += 60
    assert asyncio.run(orchestrator.monitor.tick()) == []

    final = orchestrator.workflows.get(workflow.id)
    assert final.is_completed
    assert len(final.context.execution_history) == 2
    assert orchestrator.monitor.tracked() == []


def test_create_task_defaults_to_active_session() -> None:
    orchestrator = make_orchestrator()
    session_id = orchestrator.sessions.create_session("tasks")
    orchestrator.sessions.activate_session(session_id)

    task = orchestrator.create_task("File the expense report", priority="high", tags=["admin"])

    assert task.session_id == session_id
    assert task.priority.value == "high"
    assert orchestrator.update_task_status(task.id, "in_progress").status is TaskStatus.IN_PROGRESS


def test_workflow_status_view() -> None:
    orchestrator = make_orchestrator()
    workflow = asyncio.run(
        orchestrator.create_workflow("Build the billing api integration", complexity="medium")
    )
    orchestrator.advance(workflow.id, "analysis done")

    view = orchestrator.workflow_status(workflow.id)

    assert view.status == "in_progress"
    assert view.progress.completed_tasks == 1
    assert view.next_steps == [
        "Design solution architecture",
        "Implement core functionality",
        "Test and validate solution",
    ]
    assert view.driving_task_status is TaskStatus.IN_PROGRESS
    assert view.execution_context["last_result"] == "[task_1] analysis done"
    assert view.validation_errors == []
