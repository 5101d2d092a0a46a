"""Tool registration for Todoflow MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

from fastmcp import Context, FastMCP

from .. import results
from ..errors import OperationFailedError, TodoflowError, wrap_error
from ..orchestrator import Orchestrator
from ..workflows import (
    calculate_metrics,
    filter_by_complexity,
    filter_by_status,
    search_workflows,
    validate_workflow,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    switch_session: Any
    list_sessions: Any
    session_stats: Any
    cleanup_sessions: Any
    save_session_context: Any
    get_session_context: Any
    create_workflow: Any
    advance_workflow: Any
    approve_step: Any
    workflow_status: Any
    list_workflows: Any
    workflow_metrics: Any
    validate_workflow: Any
    create_task: Any
    update_task_status: Any
    list_tasks: Any
    manage_subtasks: Any
    context_preservation: Any
    workflow_timeline: Any


def _invoke(operation: str, call: Callable[[], Any]) -> dict[str, Any]:
    try:
        return results.success(operation, call())
    except TodoflowError as exc:
        logger.info(
            "Tool rejected request",
            extra={"operation": operation, "code": exc.code, "error": exc.message},
        )
        return results.failure(operation, exc)
    except Exception as exc:
        logger.exception("Tool failed", extra={"operation": operation})
        return results.failure(operation, wrap_error(exc, operation))


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


def _workflow_summary(workflow) -> dict[str, Any]:
    return {
        "id": workflow.id,
        "title": workflow.title,
        "status": workflow.status,
        "complexity": workflow.metadata.complexity.value,
        "current_task_index": workflow.current_task_index,
        "total_tasks": len(workflow.tasks),
        "session_id": workflow.context.session_id,
        "parent_task_id": workflow.metadata.parent_task_id,
    }


def register_tools(
    server: FastMCP,
    *,
    orchestrator: Orchestrator,
) -> ToolHandles:
    """Register Todoflow's MCP tools on the server."""

    sessions = orchestrator.sessions

    def _resolve_session(session_id: str | None) -> str:
        resolved = session_id or sessions.active_session_id
        if resolved is None:
            raise OperationFailedError("No session given and no session is active")
        return resolved

    def _create_session(
        description: str,
        session_id: str | None = None,
        activate: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create an isolated work session, activating it by default."""

        def call() -> dict[str, Any]:
            created = sessions.create_session(description, session_id)
            if activate:
                sessions.activate_session(created)
            _emit_log(context, "info", "Session created", extra={"session_id": created})
            return _dump(sessions.get(created))

        return _invoke("create_session", call)

    def _switch_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            sessions.activate_session(session_id)
            _emit_log(context, "info", "Session switched", extra={"session_id": session_id})
            return _dump(sessions.get(session_id))

        return _invoke("switch_session", call)

    def _list_sessions(context: Context | None = None) -> dict[str, Any]:
        return _invoke(
            "list_sessions",
            lambda: [
                {
                    "id": session.id,
                    "description": session.description,
                    "is_active": session.is_active,
                    "workflow_ids": session.workflow_ids,
                    "last_accessed_at": session.last_accessed_at.isoformat(),
                }
                for session in sessions.list_sessions()
            ],
        )

    def _session_stats(context: Context | None = None) -> dict[str, Any]:
        return _invoke("session_stats", lambda: _dump(sessions.stats()))

    def _cleanup_sessions(
        max_age_hours: float | None = None,
        sweep_expired: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Remove stale inactive sessions; ``sweep_expired`` also evicts the active one."""

        def call() -> dict[str, Any]:
            hours = max_age_hours
            if hours is None:
                hours = orchestrator.settings.session_cleanup_max_age_hours
            removed = sessions.cleanup_inactive(hours)
            expired = sessions.sweep_expired() if sweep_expired else []
            _emit_log(
                context,
                "info",
                "Sessions cleaned up",
                extra={"removed": len(removed), "expired": len(expired)},
            )
            return {"removed": removed, "expired": expired}

        return _invoke("cleanup_sessions", call)

    def _save_session_context(
        key: str,
        value: Any,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            target = _resolve_session(session_id)
            stored = sessions.save_context(target, key, value)
            return {"session_id": target, "key": key, "stored": stored}

        return _invoke("save_session_context", call)

    def _get_session_context(
        key: str,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            target = _resolve_session(session_id)
            return {"session_id": target, "key": key, "value": sessions.get_context(target, key)}

        return _invoke("get_session_context", call)

    async def _create_workflow(
        objective: str,
        complexity: Literal["simple", "medium", "complex", "very_complex"] | None = None,
        auto_execute: bool = False,
        require_approval: bool = False,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Break an objective into an ordered workflow of steps."""

        try:
            workflow = await orchestrator.create_workflow(
                objective,
                complexity=complexity,
                auto_execute=auto_execute,
                require_approval=require_approval,
                session_id=session_id,
            )
        except TodoflowError as exc:
            return results.failure("create_workflow", exc)
        except Exception as exc:
            logger.exception("Tool failed", extra={"operation": "create_workflow"})
            return results.failure("create_workflow", wrap_error(exc, "create_workflow"))

        _emit_log(
            context,
            "info",
            "Workflow created",
            extra={"workflow_id": workflow.id, "tasks": len(workflow.tasks)},
        )
        return results.success(
            "create_workflow",
            {
                "workflow": _dump(workflow),
                "next_steps": [task.content for task in workflow.tasks[:3]],
            },
        )

    def _advance_workflow(
        workflow_id: str,
        result: str | None = None,
        success: bool = True,
        agent_id: str = "agent",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record the result of the current step and move to the next one."""

        def call() -> dict[str, Any]:
            outcome = orchestrator.advance(
                workflow_id, result, success=success, agent_id=agent_id
            )
            _emit_log(
                context,
                "info",
                "Workflow advanced",
                extra={"workflow_id": workflow_id, "status": outcome.status},
            )
            return _dump(outcome)

        return _invoke("advance_workflow", call)

    def _approve_step(
        workflow_id: str,
        notes: str | None = None,
        agent_id: str = "user",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Release the approval hold on the current step of a workflow."""

        def call() -> dict[str, Any]:
            view = orchestrator.approve_step(workflow_id, notes, agent_id=agent_id)
            _emit_log(
                context,
                "info",
                "Workflow step approved",
                extra={"workflow_id": workflow_id, "task_index": view.workflow.current_task_index},
            )
            return _dump(view)

        return _invoke("approve_step", call)

    def _workflow_status(workflow_id: str, context: Context | None = None) -> dict[str, Any]:
        return _invoke(
            "workflow_status", lambda: _dump(orchestrator.workflow_status(workflow_id))
        )

    def _list_workflows(
        query: str | None = None,
        status: Literal["pending", "in_progress", "completed"] | None = None,
        complexity: Literal["simple", "medium", "complex", "very_complex"] | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        def call() -> list[dict[str, Any]]:
            workflows = orchestrator.workflows.list()
            if session_id:
                owned = set(sessions.session_workflows(session_id))
                workflows = [workflow for workflow in workflows if workflow.id in owned]
            if query:
                workflows = search_workflows(workflows, query)
            if status:
                workflows = filter_by_status(workflows, status)
            if complexity:
                workflows = filter_by_complexity(workflows, complexity)
            return [_workflow_summary(workflow) for workflow in workflows]

        return _invoke("list_workflows", call)

    def _workflow_metrics(context: Context | None = None) -> dict[str, Any]:
        return _invoke(
            "workflow_metrics",
            lambda: _dump(calculate_metrics(orchestrator.workflows.list())),
        )

    def _validate_workflow(workflow_id: str, context: Context | None = None) -> dict[str, Any]:
        return _invoke(
            "validate_workflow",
            lambda: _dump(
                validate_workflow(
                    orchestrator.workflows.get(workflow_id), orchestrator.workflows.max_steps
                )
            ),
        )

    def _create_task(
        content: str,
        priority: Literal["critical", "high", "medium", "low"] = "medium",
        dependencies: list[str] | None = None,
        tags: list[str] | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            task = orchestrator.create_task(
                content,
                priority=priority,
                dependencies=dependencies or (),
                tags=tags or (),
                session_id=session_id,
            )
            _emit_log(context, "info", "Task created", extra={"task_id": task.id})
            return _dump(task)

        return _invoke("create_task", call)

    def _update_task_status(
        task_id: str,
        status: str,
        agent_id: str = "agent",
        notes: str | None = None,
        blocked_reason: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Move a task along the status state machine."""

        def call() -> dict[str, Any]:
            task = orchestrator.update_task_status(
                task_id,
                status,
                agent_id=agent_id,
                notes=notes,
                blocked_reason=blocked_reason,
            )
            _emit_log(
                context,
                "info",
                "Task status updated",
                extra={"task_id": task_id, "status": task.status.value},
            )
            return _dump(task)

        return _invoke("update_task_status", call)

    def _list_tasks(
        session_id: str | None = None,
        status: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        return _invoke(
            "list_tasks",
            lambda: _dump(orchestrator.tasks.list(session_id=session_id, statuses=status)),
        )

    async def _manage_subtasks(
        parent_id: str,
        action: Literal["create", "complete", "return_to_parent"],
        objectives: list[str] | None = None,
        child_id: str | None = None,
        next_parent_step: str = "",
        auto_execute: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Spawn child workflows, record their completion, or resume the parent."""

        operation = f"manage_subtasks.{action}"
        try:
            if action == "create":
                relationship = await orchestrator.spawn_subtasks(
                    parent_id,
                    objectives or [],
                    next_parent_step=next_parent_step,
                    auto_execute=auto_execute,
                )
                payload = _dump(relationship)
            elif action == "complete":
                if not child_id:
                    raise OperationFailedError("child_id is required to complete a subtask")
                payload = _dump(orchestrator.complete_subtask(parent_id, child_id))
            elif action == "return_to_parent":
                payload = _dump(orchestrator.return_to_parent(parent_id))
            else:
                raise OperationFailedError(f"Unknown subtask action '{action}'")
        except TodoflowError as exc:
            return results.failure(operation, exc)
        except Exception as exc:
            logger.exception("Tool failed", extra={"operation": operation})
            return results.failure(operation, wrap_error(exc, operation))

        _emit_log(
            context, "info", "Subtasks updated", extra={"parent_id": parent_id, "action": action}
        )
        return results.success(operation, payload)

    def _context_preservation(
        action: Literal["save", "restore", "clear"],
        key: str,
        value: Any = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Save, restore or clear a global checkpoint."""

        def call() -> dict[str, Any]:
            if action == "save":
                orchestrator.context.save_global_context(key, value)
                return {"key": key, "saved": True}
            if action == "restore":
                return {"key": key, "value": orchestrator.context.restore_global_context(key)}
            if action == "clear":
                return {"key": key, "cleared": orchestrator.context.clear(key)}
            raise OperationFailedError(f"Unknown context action '{action}'")

        return _invoke(f"context_preservation.{action}", call)

    def _workflow_timeline(
        workflow_id: str,
        limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return journaled events for a workflow in order."""

        def call() -> list[dict[str, Any]]:
            journal = orchestrator.journal
            if journal is None:
                raise OperationFailedError("Event journal is not configured")
            orchestrator.workflows.get(workflow_id)
            events = journal.fetch_stream(f"workflow::{workflow_id}", limit=limit)
            return [
                {
                    "event_type": event.event_type,
                    "timestamp": event.timestamp.isoformat(),
                    "body": event.body(),
                }
                for event in events
            ]

        return _invoke("workflow_timeline", call)

    tool_create_session = server.tool(
        name="create_session",
        description="Create an isolated work session and optionally make it active.",
    )(_create_session)

    tool_switch_session = server.tool(
        name="switch_session",
        description="Activate an existing session, deactivating the previous one.",
    )(_switch_session)

    tool_list_sessions = server.tool(
        name="list_sessions",
        description="List sessions, most recently used first.",
    )(_list_sessions)

    tool_session_stats = server.tool(
        name="session_stats",
        description="Summarize session counts and creation times.",
    )(_session_stats)

    tool_cleanup_sessions = server.tool(
        name="cleanup_sessions",
        description="Remove inactive sessions older than the configured age.",
    )(_cleanup_sessions)

    tool_save_session_context = server.tool(
        name="save_session_context",
        description="Store a value in a session's context memory.",
    )(_save_session_context)

    tool_get_session_context = server.tool(
        name="get_session_context",
        description="Read a value from a session's context memory.",
    )(_get_session_context)

    tool_create_workflow = server.tool(
        name="create_workflow",
        description="Create a multi-step workflow from an objective.",
    )(_create_workflow)

    tool_advance_workflow = server.tool(
        name="advance_workflow",
        description="Record the current step's result and advance the workflow.",
    )(_advance_workflow)

    tool_approve_step = server.tool(
        name="approve_step",
        description="Approve the workflow step waiting at an approval gate so it can run.",
    )(_approve_step)

    tool_workflow_status = server.tool(
        name="workflow_status",
        description="Show progress, next steps and preserved context for a workflow.",
    )(_workflow_status)

    tool_list_workflows = server.tool(
        name="list_workflows",
        description="Search and filter workflows by text, status, complexity or session.",
    )(_list_workflows)

    tool_workflow_metrics = server.tool(
        name="workflow_metrics",
        description="Aggregate completion and complexity metrics across workflows.",
    )(_workflow_metrics)

    tool_validate_workflow = server.tool(
        name="validate_workflow",
        description="Check a workflow's structure and dependencies.",
    )(_validate_workflow)

    tool_create_task = server.tool(
        name="create_task",
        description="Create a standalone task in the active or given session.",
    )(_create_task)

    tool_update_task_status = server.tool(
        name="update_task_status",
        description="Change a task's status following the allowed transitions.",
    )(_update_task_status)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List tasks, optionally filtered by session and status.",
    )(_list_tasks)

    tool_manage_subtasks = server.tool(
        name="manage_subtasks",
        description="Create subtasks for a parent, complete one, or return to the parent.",
    )(_manage_subtasks)

    tool_context_preservation = server.tool(
        name="context_preservation",
        description="Save, restore or clear a global context checkpoint.",
    )(_context_preservation)

    tool_workflow_timeline = server.tool(
        name="workflow_timeline",
        description="List journaled events recorded for a workflow.",
    )(_workflow_timeline)

    return ToolHandles(
        create_session=tool_create_session,
        switch_session=tool_switch_session,
        list_sessions=tool_list_sessions,
        session_stats=tool_session_stats,
        cleanup_sessions=tool_cleanup_sessions,
        save_session_context=tool_save_session_context,
        get_session_context=tool_get_session_context,
        create_workflow=tool_create_workflow,
        advance_workflow=tool_advance_workflow,
        approve_step=tool_approve_step,
        workflow_status=tool_workflow_status,
        list_workflows=tool_list_workflows,
        workflow_metrics=tool_workflow_metrics,
        validate_workflow=tool_validate_workflow,
        create_task=tool_create_task,
        update_task_status=tool_update_task_status,
        list_tasks=tool_list_tasks,
        manage_subtasks=tool_manage_subtasks,
        context_preservation=tool_context_preservation,
        workflow_timeline=tool_workflow_timeline,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
