"""FastMCP server bootstrap for Todoflow."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import TodoflowSettings, get_settings
from .errors import StateLoadError
from .orchestrator import Orchestrator
from .storage import EventJournal, JournalUnavailableError
from .storage.journal import DEFAULT_COLLECTION
from .tools import register_tools
from .workflows import calculate_metrics


def configure_logging(level: str) -> None:
    """Configure root logging for the Todoflow server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_status_payload(
    orchestrator: Orchestrator,
    *,
    journal_metadata: dict[str, Any],
    state_metadata: dict[str, Any],
    request_id: Any = None,
) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    settings = orchestrator.settings
    tasks = orchestrator.tasks.list()
    status_counts: dict[str, int] = {}
    for task in tasks:
        status_counts[task.status.value] = status_counts.get(task.status.value, 0) + 1

    active = orchestrator.sessions.active_session_id
    stats = orchestrator.sessions.stats()
    workflows = orchestrator.workflows.list()

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "sessions": {
            "total": stats.total_sessions,
            "active_session_id": active,
            "timeout_minutes": settings.session_timeout_minutes,
        },
        "workflows": {
            "metrics": calculate_metrics(workflows).model_dump(mode="json"),
            "executing": [wf.id for wf in workflows if orchestrator.is_executing(wf.id)],
        },
        "tasks": {
            "count": len(tasks),
            "status_counts": status_counts,
        },
        "monitor": {
            "running": orchestrator.monitor.running,
            "tracked": orchestrator.monitor.tracked(),
            "interval_seconds": settings.monitor_interval_seconds,
            "idle_seconds": settings.monitor_idle_seconds,
        },
        "storage": {
            "journal": journal_metadata,
            "state": state_metadata,
        },
        "request_id": request_id,
    }


def create_server(
    settings: Optional[TodoflowSettings] = None,
    orchestrator: Orchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with baseline resources."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)

    journal: EventJournal | None = None
    journal_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": DEFAULT_COLLECTION,
        "error": None,
    }
    if orchestrator is None:
        try:
            journal = EventJournal(settings.chroma_persist_path)
            journal.ping()
            journal_metadata["available"] = True
        except JournalUnavailableError as exc:
            journal_metadata["error"] = str(exc)
            journal = None
        orchestrator = Orchestrator(settings, journal=journal)
    else:
        journal_metadata["available"] = orchestrator.journal is not None

    state_metadata: dict[str, Any] = {
        "path": str(settings.state_path),
        "restored": False,
        "quarantined": [],
        "error": None,
    }
    if settings.state_path.exists():
        try:
            report = orchestrator.load_state(settings.state_path, on_invalid="quarantine")
            state_metadata["restored"] = True
            state_metadata["quarantined"] = [
                {"kind": item.kind, "id": item.id, "problems": item.problems}
                for item in report.quarantined
            ]
        except StateLoadError as exc:
            state_metadata["error"] = exc.message
            logger.error("State restore failed", extra={"error": exc.message})

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        orchestrator.monitor.start()
        try:
            yield {"orchestrator": orchestrator}
        finally:
            await orchestrator.shutdown()
            orchestrator.save_state(settings.state_path)

    server = FastMCP(
        name="Todoflow MCP",
        version=__version__,
        instructions=(
            "Todoflow sequences multi-step agent work. Create a session, break an "
            "objective into a workflow, report each step's result to advance it, and "
            "spawn subtasks when a step needs its own plan. Context is preserved "
            "across steps and restarts."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(server, orchestrator=orchestrator)

    @server.resource(
        "resource://todoflow/status",
        name="todoflow_status",
        description="Provides the current runtime status for the Todoflow MCP server.",
        mime_type="application/json",
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        payload = build_status_payload(
            orchestrator,
            journal_metadata=journal_metadata,
            state_metadata=state_metadata,
            request_id=getattr(context, "request_id", None),
        )
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "state_metadata", state_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Todoflow MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Todoflow MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
            "state_restored": getattr(server, "state_metadata", {}).get("restored"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
