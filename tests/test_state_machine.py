from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from todoflow_mcp.errors import (
    InvalidInputError,
    InvalidStatusTransitionError,
    TaskNotFoundError,
)
from todoflow_mcp.tasks import TaskStatus, TaskStore
from todoflow_mcp.tasks.state_machine import (
    VALID_TRANSITIONS,
    allowed_transitions,
    can_transition,
)


class StepClock:
    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=30)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


def make_store(**kwargs) -> TaskStore:
    clock = StepClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    return TaskStore(clock=clock, **kwargs)


def test_every_status_has_a_transition_row() -> None:
    assert set(VALID_TRANSITIONS) == set(TaskStatus)
    assert allowed_transitions("archived") == frozenset()
    assert can_transition("completed", "archived")
    assert not can_transition("completed", "pending")


def test_direct_pending_to_completed_is_rejected() -> None:
    store = make_store()
    task = store.create("Write the release notes")

    with pytest.raises(InvalidStatusTransitionError) as excinfo:
        store.transition(task.id, "completed")

    assert excinfo.value.code == "INVALID_STATUS_TRANSITION"
    assert excinfo.value.details == {"id": task.id, "from": "pending", "to": "completed"}

    unchanged = store.get(task.id)
    assert unchanged.status is TaskStatus.PENDING
    assert len(unchanged.history) == 1


def test_pending_in_progress_completed_appends_two_entries() -> None:
    store = make_store()
    task = store.create("Write the release notes")
    baseline = len(task.history)

    store.transition(task.id, TaskStatus.IN_PROGRESS, agent_id="agent-7", notes="picked up")
    done = store.transition(task.id, "completed", agent_id="agent-7")

    assert done.status is TaskStatus.COMPLETED
    new_entries = done.history[baseline:]
    assert [(entry.previous_status, entry.new_status) for entry in new_entries] == [
        (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    ]
    assert new_entries[0].notes == "picked up"
    assert new_entries[0].agent_id == "agent-7"
    assert all(entry.action == "status_changed" for entry in new_entries)
    assert new_entries[1].duration == pytest.approx(30.0)


def test_archived_is_terminal() -> None:
    store = make_store()
    task = store.create("Ship it")
    for status in ("in_progress", "completed", "archived"):
        store.transition(task.id, status)

    for target in TaskStatus:
        with pytest.raises(InvalidStatusTransitionError):
            store.transition(task.id, target)

    assert store.get(task.id).status is TaskStatus.ARCHIVED


def test_blocked_reason_only_kept_while_blocked() -> None:
    store = make_store()
    task = store.create("Wait for review")

    blocked = store.transition(task.id, "blocked", blocked_reason="waiting on API keys")
    assert blocked.blocked_reason == "waiting on API keys"

    resumed = store.transition(task.id, "in_progress", blocked_reason="ignored")
    assert resumed.blocked_reason is None


def test_unknown_status_and_task_raise_typed_errors() -> None:
    store = make_store()
    task = store.create("Something to do")

    with pytest.raises(InvalidInputError):
        store.transition(task.id, "done")
    with pytest.raises(TaskNotFoundError):
        store.transition("todo-missing", "in_progress")


def test_create_validates_content_priority_and_dependencies() -> None:
    store = make_store(max_content_length=20)

    with pytest.raises(InvalidInputError) as excinfo:
        store.create("no")
    assert excinfo.value.field == "content"

    with pytest.raises(InvalidInputError):
        store.create("x" * 21)
    with pytest.raises(InvalidInputError) as excinfo:
        store.create("valid content", priority="urgent")
    assert excinfo.value.field == "priority"
    with pytest.raises(InvalidInputError) as excinfo:
        store.create("valid content", dependencies=["bad id"])
    assert excinfo.value.field == "dependencies"

    assert len(store) == 0


def test_returned_tasks_are_copies() -> None:
    store = make_store()
    task = store.create("Copy semantics", tags=["a", "a", "b"])
    assert task.tags == ["a", "b"]

    task.history.clear()
    task.tags.append("mutated")

    stored = store.get(task.id)
    assert len(stored.history) == 1
    assert stored.tags == ["a", "b"]


def test_list_filters_by_session_and_status() -> None:
    store = make_store()
    first = store.create("First task", session_id="s1")
    store.create("Second task", session_id="s2")
    store.transition(first.id, "in_progress")

    assert [task.id for task in store.list(session_id="s1")] == [first.id]
    assert [task.id for task in store.list(statuses=["in_progress"])] == [first.id]
    assert len(store.list()) == 2


def test_append_history_records_note_without_status() -> None:
    store = make_store()
    task = store.create("Annotated task")

    updated = store.append_history(task.id, "comment", notes="needs design input", agent_id="a1")

    assert updated.status is TaskStatus.PENDING
    assert updated.history[-1].action == "comment"
    assert updated.history[-1].new_status is None


def test_approval_hold_is_released_by_a_normal_transition() -> None:
    store = make_store()
    task = store.create("Gated change")

    assert not can_transition("pending", "awaiting_approval")
    held = store.hold_for_approval(task.id, notes="Step 1 requires approval")

    assert held.status is TaskStatus.AWAITING_APPROVAL
    assert held.history[-1].action == "approval_requested"
    assert held.history[-1].previous_status is TaskStatus.PENDING

    released = store.transition(task.id, "in_progress", agent_id="user", notes="Approved")
    assert released.status is TaskStatus.IN_PROGRESS


def test_approval_hold_rejected_from_settled_statuses() -> None:
    store = make_store()
    task = store.create("Already finished")
    store.transition(task.id, "in_progress")
    store.transition(task.id, "completed")

    with pytest.raises(InvalidStatusTransitionError):
        store.hold_for_approval(task.id)
    assert store.get(task.id).status is TaskStatus.COMPLETED

    with pytest.raises(TaskNotFoundError):
        store.hold_for_approval("task-missing")
