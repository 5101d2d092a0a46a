"""Session data models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..context.models import ContextSnapshot


class SessionContext(BaseModel):
    """Isolated namespace grouping workflows and contextual memory."""

    id: str
    description: str
    created_at: datetime
    last_accessed_at: datetime
    workflow_ids: list[str] = Field(default_factory=list)
    execution_state: dict[str, ContextSnapshot] = Field(default_factory=dict)
    parent_child_relationships: dict[str, list[str]] = Field(default_factory=dict)
    context_memory: dict[str, ContextSnapshot] = Field(default_factory=dict)
    is_active: bool = False


class SessionStats(BaseModel):
    total_sessions: int
    active_sessions: int
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None


__all__ = ["SessionContext", "SessionStats"]
