from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from todoflow_mcp.config import TodoflowSettings
from todoflow_mcp.orchestrator import Orchestrator
from todoflow_mcp.storage import EventJournal
from todoflow_mcp.tools import register_tools

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubCollection:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def add(self, *, documents, metadatas, ids) -> None:
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append((record_id, document, dict(metadata)))

    def get(self, *, ids=None, where=None, limit=None):
        filtered = [
            record
            for record in self.records
            if not where or all(record[2].get(key) == value for key, value in where.items())
        ]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record[0] for record in filtered],
            "documents": [record[1] for record in filtered],
            "metadatas": [record[2] for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def build(tmp_path: Path | None = None, *, journal: bool = False):
    server = StubServer()
    event_journal = None
    if journal:
        client = StubClient()
        event_journal = EventJournal(tmp_path, client_factory=lambda: client)
    orchestrator = Orchestrator(TodoflowSettings(), journal=event_journal, clock=lambda: NOW)
    handles = register_tools(server, orchestrator=orchestrator)
    return server, handles, orchestrator


def test_register_tools_exposes_every_tool() -> None:
    server, _, _ = build()

    assert set(server._tools) == {
        "create_session",
        "switch_session",
        "list_sessions",
        "session_stats",
        "cleanup_sessions",
        "save_session_context",
        "get_session_context",
        "create_workflow",
        "advance_workflow",
        "approve_step",
        "workflow_status",
        "list_workflows",
        "workflow_metrics",
        "validate_workflow",
        "create_task",
        "update_task_status",
        "list_tasks",
        "manage_subtasks",
        "context_preservation",
        "workflow_timeline",
    }


def test_session_tools_flow() -> None:
    _, handles, _ = build()

    first = handles.create_session.fn(description="first")
    assert first["ok"] is True
    assert first["operation"] == "create_session"
    first_id = first["data"]["id"]
    assert first["data"]["is_active"] is True

    second_id = handles.create_session.fn(description="second", activate=False)["data"]["id"]
    switched = handles.switch_session.fn(session_id=second_id)
    assert switched["data"]["is_active"] is True

    listed = handles.list_sessions.fn()["data"]
    assert {item["id"]: item["is_active"] for item in listed} == {
        first_id: False,
        second_id: True,
    }

    saved = handles.save_session_context.fn(key="plan", value={"steps": 3})
    assert saved["data"] == {"session_id": second_id, "key": "plan", "stored": True}
    fetched = handles.get_session_context.fn(key="plan")
    assert fetched["data"]["value"] == {"steps": 3}

    stats = handles.session_stats.fn()["data"]
    assert stats["total_sessions"] == 2
    assert stats["active_sessions"] == 1

    cleaned = handles.cleanup_sessions.fn()
    assert cleaned["data"] == {"removed": [], "expired": []}


def test_tool_failures_are_tagged_errors() -> None:
    _, handles, _ = build()

    missing = handles.switch_session.fn(session_id="session-missing")
    assert missing["ok"] is False
    assert missing["error"]["code"] == "SESSION_NOT_FOUND"

    no_session = handles.get_session_context.fn(key="plan")
    assert no_session["error"]["code"] == "OPERATION_FAILED"

    bad_task = handles.create_task.fn(content="no")
    assert bad_task["error"]["code"] == "INVALID_INPUT"
    assert bad_task["error"]["details"]["field"] == "content"

    unknown = handles.workflow_status.fn(workflow_id="workflow-0-missingxx")
    assert unknown["error"]["code"] == "WORKFLOW_NOT_FOUND"


def test_workflow_tools_drive_a_workflow(tmp_path: Path) -> None:
    _, handles, _ = build(tmp_path, journal=True)
    handles.create_session.fn(description="workflows")

    created = asyncio.run(
        handles.create_workflow.fn(
            objective="Build the billing api integration", complexity="medium"
        )
    )
    assert created["ok"] is True
    workflow_id = created["data"]["workflow"]["id"]
    assert created["data"]["next_steps"][0].startswith("Analyze requirements")

    advanced = handles.advance_workflow.fn(workflow_id=workflow_id, result="analysis done")
    assert advanced["data"]["status"] == "advanced"
    assert advanced["data"]["progress"]["progress_percentage"] == 25

    failed = handles.advance_workflow.fn(workflow_id=workflow_id, result="oops", success=False)
    assert failed["data"]["status"] == "failed"

    status = handles.workflow_status.fn(workflow_id=workflow_id)["data"]
    assert status["status"] == "in_progress"
    assert status["progress"]["completed_tasks"] == 1

    listed = handles.list_workflows.fn(query="billing", status="in_progress")["data"]
    assert [item["id"] for item in listed] == [workflow_id]
    assert handles.list_workflows.fn(complexity="simple")["data"] == []

    metrics = handles.workflow_metrics.fn()["data"]
    assert metrics["total"] == 1
    assert metrics["complexity_distribution"]["medium"] == 1

    validation = handles.validate_workflow.fn(workflow_id=workflow_id)["data"]
    assert validation == {"ok": True, "errors": []}

    timeline = handles.workflow_timeline.fn(workflow_id=workflow_id)["data"]
    assert [event["event_type"] for event in timeline] == [
        "workflow_created",
        "workflow_step",
        "workflow_step",
    ]
    assert timeline[1]["body"]["success"] is True


def test_workflow_timeline_without_journal() -> None:
    _, handles, orchestrator = build()
    workflow = asyncio.run(orchestrator.create_workflow("Quick fix", complexity="simple"))

    response = handles.workflow_timeline.fn(workflow_id=workflow.id)

    assert response["ok"] is False
    assert response["error"]["code"] == "OPERATION_FAILED"


def test_create_workflow_tool_rejects_short_objective() -> None:
    _, handles, _ = build()

    response = asyncio.run(handles.create_workflow.fn(objective="no"))

    assert response["ok"] is False
    assert response["operation"] == "create_workflow"
    assert response["error"]["code"] == "INVALID_INPUT"


def test_task_tools_follow_state_machine() -> None:
    _, handles, _ = build()

    task = handles.create_task.fn(content="Write changelog", priority="high", tags=["docs"])["data"]
    assert task["status"] == "pending"

    rejected = handles.update_task_status.fn(task_id=task["id"], status="completed")
    assert rejected["ok"] is False
    assert rejected["error"]["code"] == "INVALID_STATUS_TRANSITION"

    started = handles.update_task_status.fn(task_id=task["id"], status="in_progress", notes="go")
    assert started["data"]["status"] == "in_progress"
    assert started["data"]["history"][-1]["notes"] == "go"

    listed = handles.list_tasks.fn(status=["in_progress"])["data"]
    assert [item["id"] for item in listed] == [task["id"]]


def test_manage_subtasks_tool_actions() -> None:
    _, handles, orchestrator = build()
    parent = asyncio.run(orchestrator.create_workflow("Coordinate release", complexity="simple"))

    created = asyncio.run(
        handles.manage_subtasks.fn(
            parent_id=parent.id,
            action="create",
            objectives=["Tag the release"],
            next_parent_step="Announce",
        )
    )
    assert created["operation"] == "manage_subtasks.create"
    child_id = created["data"]["child_ids"][0]

    pending = asyncio.run(handles.manage_subtasks.fn(parent_id=parent.id, action="return_to_parent"))
    assert pending["ok"] is False
    assert pending["error"]["details"]["pending"] == [child_id]

    missing_child = asyncio.run(handles.manage_subtasks.fn(parent_id=parent.id, action="complete"))
    assert missing_child["error"]["code"] == "OPERATION_FAILED"

    completed = asyncio.run(
        handles.manage_subtasks.fn(parent_id=parent.id, action="complete", child_id=child_id)
    )
    assert completed["data"]["all_complete"] is True

    returned = asyncio.run(handles.manage_subtasks.fn(parent_id=parent.id, action="return_to_parent"))
    assert returned["data"]["next_parent_step"] == "Announce"


def test_context_preservation_tool() -> None:
    _, handles, _ = build()

    assert handles.context_preservation.fn(action="save", key="cp", value=[1, 2])["ok"] is True
    restored = handles.context_preservation.fn(action="restore", key="cp")
    assert restored["data"]["value"] == [1, 2]
    cleared = handles.context_preservation.fn(action="clear", key="cp")
    assert cleared["data"]["cleared"] is True
    assert handles.context_preservation.fn(action="restore", key="cp")["data"]["value"] is None

    unserializable = handles.context_preservation.fn(action="save", key="bad", value=object())
    assert unserializable["error"]["code"] == "INVALID_INPUT"


def test_approve_step_tool_releases_gate() -> None:
    _, handles, orchestrator = build()
    workflow = asyncio.run(
        orchestrator.create_workflow("Rotate credentials", auto_execute=True, require_approval=True)
    )

    waiting = asyncio.run(orchestrator.auto_advance(workflow.id))
    assert waiting.status == "waiting"

    status = handles.workflow_status.fn(workflow_id=workflow.id)["data"]
    assert status["awaiting_approval"] is True
    assert status["driving_task_status"] == "awaiting_approval"

    approved = handles.approve_step.fn(workflow_id=workflow.id, notes="ship it")
    assert approved["ok"] is True
    assert approved["operation"] == "approve_step"
    assert approved["data"]["awaiting_approval"] is False
    assert approved["data"]["driving_task_status"] == "in_progress"

    again = handles.approve_step.fn(workflow_id=workflow.id)
    assert again["ok"] is False
    assert again["error"]["code"] == "INVALID_WORKFLOW_STATE"


def test_cleanup_sessions_honours_zero_max_age() -> None:
    clock = {"now": NOW}
    orchestrator = Orchestrator(TodoflowSettings(), clock=lambda: clock["now"])
    handles = register_tools(StubServer(), orchestrator=orchestrator)
    handles.create_session.fn(description="stale", activate=False)
    active = handles.create_session.fn(description="current")["data"]["id"]
    clock["now"] = NOW + timedelta(minutes=5)

    assert handles.cleanup_sessions.fn()["data"]["removed"] == []
    cleaned = handles.cleanup_sessions.fn(max_age_hours=0)["data"]

    assert len(cleaned["removed"]) == 1
    assert [session.id for session in orchestrator.sessions.list_sessions()] == [active]
