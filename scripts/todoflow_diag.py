"""Todoflow MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from todoflow_mcp.config import TodoflowSettings
from todoflow_mcp.errors import StateLoadError
from todoflow_mcp.storage import EventJournal, JournalUnavailableError, StateSnapshot, read_snapshot
from todoflow_mcp.workflows import calculate_metrics, calculate_progress


def load_state(settings: TodoflowSettings) -> StateSnapshot:
    try:
        report = read_snapshot(settings.state_path, on_invalid="quarantine")
    except StateLoadError as exc:
        print(f"State unavailable: {exc.message}")
        raise SystemExit(1)
    for item in report.quarantined:
        print(f"Quarantined {item.kind} {item.id}: {'; '.join(item.problems)}")
    return report.snapshot


def load_journal(settings: TodoflowSettings) -> EventJournal:
    try:
        return EventJournal(settings.chroma_persist_path)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = TodoflowSettings()
    snapshot = load_state(settings)
    for session in snapshot.sessions:
        marker = "*" if session.id == snapshot.active_session_id else " "
        print(
            f"{marker} {session.id} workflows={len(session.workflow_ids)} "
            f"last_accessed={session.last_accessed_at.isoformat()} {session.description}"
        )


def cmd_workflows(args: argparse.Namespace) -> None:
    settings = TodoflowSettings()
    snapshot = load_state(settings)
    rows = []
    for workflow in snapshot.workflows:
        progress = calculate_progress(workflow, settings.default_task_minutes)
        rows.append(
            {
                "id": workflow.id,
                "title": workflow.title,
                "status": workflow.status,
                "complexity": workflow.metadata.complexity.value,
                "completed_tasks": progress.completed_tasks,
                "total_tasks": progress.total_tasks,
                "percentage": progress.progress_percentage,
                "session_id": workflow.context.session_id,
            }
        )
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(
                f"{row['id']} [{row['status']}] {row['completed_tasks']}/{row['total_tasks']} "
                f"({row['percentage']}%) {row['title']}"
            )


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = TodoflowSettings()
    snapshot = load_state(settings)
    tasks = snapshot.tasks
    if args.status:
        tasks = [task for task in tasks if task.status.value == args.status]
    for task in tasks:
        print(f"{task.id} [{task.status.value}] ({task.priority.value}) -> {task.workflow_id}")


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = TodoflowSettings()
    snapshot = load_state(settings)

    status_counts: dict[str, int] = {}
    for task in snapshot.tasks:
        status = task.status.value
        status_counts[status] = status_counts.get(status, 0) + 1

    pending_parents = [
        {"parent_id": item.parent_id, "pending": item.pending_children}
        for item in snapshot.subtask_relationships
        if item.pending_children
    ]

    metrics = {
        "saved_at": snapshot.saved_at.isoformat(),
        "sessions_total": len(snapshot.sessions),
        "active_session_id": snapshot.active_session_id,
        "tasks_total": len(snapshot.tasks),
        "status_counts": status_counts,
        "workflows": calculate_metrics(snapshot.workflows).model_dump(mode="json"),
        "subtask_parents_pending": pending_parents,
    }
    print(json.dumps(metrics, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = TodoflowSettings()
    journal = load_journal(settings)
    try:
        if args.stream:
            events = journal.fetch_stream(args.stream, limit=args.limit)
        else:
            filters = {"event_type": args.event_type} if args.event_type else None
            events = journal.search_events(args.query, filters=filters, limit=args.limit)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "event_id": event.id,
            "stream_id": event.stream_id,
            "event_type": event.event_type,
            "metadata": event.metadata,
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Todoflow MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List saved sessions")
    p_sessions.set_defaults(func=cmd_sessions)

    p_workflows = sub.add_parser("workflows", help="List saved workflows with progress")
    p_workflows.add_argument("--json", action="store_true", help="Output JSON")
    p_workflows.set_defaults(func=cmd_workflows)

    p_tasks = sub.add_parser("tasks", help="List saved tasks")
    p_tasks.add_argument("--status", help="Only show tasks in this status")
    p_tasks.set_defaults(func=cmd_tasks)

    p_metrics = sub.add_parser("metrics", help="Show session/task/workflow counts")
    p_metrics.set_defaults(func=cmd_metrics)

    p_events = sub.add_parser("events", help="Search the event journal")
    p_events.add_argument("--stream", help="Fetch a single stream, e.g. workflow::<id>")
    p_events.add_argument("--event-type")
    p_events.add_argument("--query", default=None)
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show at most N events",
    )
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
