"""In-memory session store with a single active-session pointer."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..context.models import ContextSnapshot
from ..errors import InvalidInputError, SessionNotFoundError
from ..validation import is_valid_session_id, new_session_id
from .models import SessionContext, SessionStats

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns every session and the active pointer.

    One re-entrant lock guards both the session map and the active pointer, so
    activation is observed by readers as a single swap.
    """

    def __init__(
        self,
        *,
        timeout_minutes: int = 30,
        strict_context: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._timeout = timedelta(minutes=timeout_minutes)
        self._strict_context = strict_context
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, SessionContext] = {}
        self._active_id: str | None = None
        self._lock = threading.RLock()

    @property
    def active_session_id(self) -> str | None:
        with self._lock:
            return self._active_id

    def _require(self, session_id: str) -> SessionContext:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def create_session(self, description: str, session_id: str | None = None) -> str:
        if session_id is not None and not is_valid_session_id(session_id):
            raise InvalidInputError(
                "session_id", f"Invalid session id '{session_id}'", value=session_id
            )
        now = self._clock()
        session = SessionContext(
            id=session_id or new_session_id(),
            description=description,
            created_at=now,
            last_accessed_at=now,
        )
        with self._lock:
            if session.id in self._sessions:
                raise InvalidInputError(
                    "session_id", f"Session '{session.id}' already exists", value=session.id
                )
            self._sessions[session.id] = session
        logger.info("Session created", extra={"session_id": session.id})
        return session.id

    def add(self, session: SessionContext, *, active: bool = False) -> None:
        """Register a restored session."""

        with self._lock:
            stored = session.model_copy(deep=True)
            stored.is_active = False
            self._sessions[stored.id] = stored
            if active:
                self.activate_session(stored.id, touch=False)

    def activate_session(self, session_id: str, *, touch: bool = True) -> bool:
        with self._lock:
            target = self._require(session_id)
            if self._active_id is not None and self._active_id in self._sessions:
                self._sessions[self._active_id].is_active = False
            target.is_active = True
            if touch:
                target.last_accessed_at = self._clock()
            previous, self._active_id = self._active_id, session_id
        logger.info(
            "Session activated",
            extra={"session_id": session_id, "previous_session_id": previous},
        )
        return True

    def get_active_session(self) -> SessionContext | None:
        """Return the active session, refreshing its last access time."""

        with self._lock:
            if self._active_id is None:
                return None
            session = self._sessions.get(self._active_id)
            if session is None:
                return None
            session.last_accessed_at = self._clock()
            return session.model_copy(deep=True)

    def get(self, session_id: str) -> SessionContext:
        with self._lock:
            return self._require(session_id).model_copy(deep=True)

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list_sessions(self) -> list[SessionContext]:
        with self._lock:
            sessions = [session.model_copy(deep=True) for session in self._sessions.values()]
        return sorted(sessions, key=lambda session: session.last_accessed_at, reverse=True)

    def is_expired(self, session: SessionContext) -> bool:
        return self._clock() - session.last_accessed_at > self._timeout

    def sweep_expired(self) -> list[str]:
        """Remove every expired session, active or not.

        Use ``cleanup_inactive`` when the active session must survive.
        """

        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if self.is_expired(session)
            ]
            for session_id in expired:
                del self._sessions[session_id]
                if session_id == self._active_id:
                    self._active_id = None
        if expired:
            logger.info("Expired sessions swept", extra={"session_ids": expired})
        return expired

    def cleanup_inactive(self, max_age_hours: float = 24) -> list[str]:
        """Remove inactive sessions not accessed within ``max_age_hours``."""

        cutoff = self._clock() - timedelta(hours=max_age_hours)
        with self._lock:
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if not session.is_active and session.last_accessed_at < cutoff
            ]
            for session_id in stale:
                del self._sessions[session_id]
        if stale:
            logger.info("Inactive sessions removed", extra={"session_ids": stale})
        return stale

    def save_context(self, session_id: str, key: str, value: Any) -> bool:
        """Store a snapshot of ``value`` under ``key``.

        Unknown sessions drop the write with a warning, or raise
        ``SessionNotFoundError`` when the store is strict.
        """

        snapshot = ContextSnapshot.capture(value)
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                if self._strict_context:
                    raise SessionNotFoundError(session_id)
                logger.warning(
                    "Dropping context for unknown session",
                    extra={"session_id": session_id, "key": key},
                )
                return False
            session.context_memory[key] = snapshot
            session.last_accessed_at = self._clock()
        return True

    def get_context(self, session_id: str, key: str) -> Any | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            snapshot = session.context_memory.get(key)
        return snapshot.restore() if snapshot is not None else None

    def link_workflow(self, session_id: str, workflow_id: str) -> bool:
        with self._lock:
            session = self._require(session_id)
            if workflow_id in session.workflow_ids:
                return False
            session.workflow_ids.append(workflow_id)
            return True

    def unlink_workflow(self, session_id: str, workflow_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or workflow_id not in session.workflow_ids:
                return False
            session.workflow_ids.remove(workflow_id)
            session.execution_state.pop(workflow_id, None)
            return True

    def session_workflows(self, session_id: str) -> list[str]:
        with self._lock:
            return list(self._require(session_id).workflow_ids)

    def set_execution_state(self, session_id: str, workflow_id: str, state: Any) -> None:
        snapshot = ContextSnapshot.capture(state)
        with self._lock:
            self._require(session_id).execution_state[workflow_id] = snapshot

    def get_execution_state(self, session_id: str, workflow_id: str) -> Any | None:
        with self._lock:
            session = self._sessions.get(session_id)
            snapshot = session.execution_state.get(workflow_id) if session else None
        return snapshot.restore() if snapshot is not None else None

    def record_parent_child(self, session_id: str, parent_id: str, child_id: str) -> bool:
        with self._lock:
            children = self._require(session_id).parent_child_relationships.setdefault(
                parent_id, []
            )
            if child_id in children:
                return False
            children.append(child_id)
            return True

    def child_tasks(self, session_id: str, parent_id: str) -> list[str]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            return list(session.parent_child_relationships.get(parent_id, []))

    def stats(self) -> SessionStats:
        with self._lock:
            sessions = list(self._sessions.values())
        created = [session.created_at for session in sessions]
        return SessionStats(
            total_sessions=len(sessions),
            active_sessions=sum(1 for session in sessions if session.is_active),
            oldest_created_at=min(created) if created else None,
            newest_created_at=max(created) if created else None,
        )


__all__ = ["SessionStore"]
