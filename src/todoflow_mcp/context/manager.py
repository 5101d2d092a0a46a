"""Context preservation across steps and parent/child subtask bookkeeping."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from .models import ContextSnapshot, SubtaskRelationship

logger = logging.getLogger(__name__)


class ContextPreservationManager:
    """Keeps three independent namespaces of snapshots.

    Execution contexts are keyed by workflow id, subtask relationships by parent
    id and global checkpoints by arbitrary key. Every read decodes a fresh copy.
    """

    def __init__(self) -> None:
        self._execution: dict[str, ContextSnapshot] = {}
        self._relationships: dict[str, SubtaskRelationship] = {}
        self._global: dict[str, ContextSnapshot] = {}
        self._lock = threading.RLock()

    def save_execution_context(self, workflow_id: str, context: Any) -> None:
        snapshot = ContextSnapshot.capture(context)
        with self._lock:
            self._execution[workflow_id] = snapshot

    def restore_execution_context(self, workflow_id: str) -> Any | None:
        with self._lock:
            snapshot = self._execution.get(workflow_id)
        return snapshot.restore() if snapshot is not None else None

    def create_subtask_relationship(
        self,
        parent_id: str,
        child_ids: Iterable[str],
        parent_context: Any = None,
        next_parent_step: str = "",
    ) -> SubtaskRelationship:
        """Fix the child set for ``parent_id``; a second call replaces the first."""

        relationship = SubtaskRelationship(
            parent_id=parent_id,
            child_ids=tuple(dict.fromkeys(child_ids)),
            next_parent_step=next_parent_step,
            parent_context=ContextSnapshot.capture(parent_context),
        )
        with self._lock:
            replaced = parent_id in self._relationships
            self._relationships[parent_id] = relationship
        if replaced:
            logger.debug("Subtask relationship replaced", extra={"parent_id": parent_id})
        return relationship.model_copy(deep=True)

    def complete_subtask(self, parent_id: str, child_id: str) -> SubtaskRelationship | None:
        with self._lock:
            relationship = self._relationships.get(parent_id)
            if relationship is None:
                return None
            if child_id not in relationship.child_ids:
                logger.warning(
                    "Ignoring completion for unknown child",
                    extra={"parent_id": parent_id, "child_id": child_id},
                )
            elif child_id not in relationship.completed_children:
                relationship.completed_children.append(child_id)
            return relationship.model_copy(deep=True)

    def all_subtasks_complete(self, parent_id: str) -> bool:
        with self._lock:
            relationship = self._relationships.get(parent_id)
            if relationship is None or not relationship.child_ids:
                return True
            return relationship.all_complete

    def get_subtask_relationship(self, parent_id: str) -> SubtaskRelationship | None:
        with self._lock:
            relationship = self._relationships.get(parent_id)
            return relationship.model_copy(deep=True) if relationship is not None else None

    def list_subtask_relationships(self) -> list[SubtaskRelationship]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._relationships.values()]

    def get_parent_context(self, parent_id: str) -> Any | None:
        with self._lock:
            relationship = self._relationships.get(parent_id)
        return relationship.parent_context.restore() if relationship is not None else None

    def save_global_context(self, key: str, value: Any) -> None:
        snapshot = ContextSnapshot.capture(value)
        with self._lock:
            self._global[key] = snapshot

    def restore_global_context(self, key: str) -> Any | None:
        with self._lock:
            snapshot = self._global.get(key)
        return snapshot.restore() if snapshot is not None else None

    def export_state(
        self,
    ) -> tuple[dict[str, ContextSnapshot], list[SubtaskRelationship], dict[str, ContextSnapshot]]:
        with self._lock:
            return (
                dict(self._execution),
                [item.model_copy(deep=True) for item in self._relationships.values()],
                dict(self._global),
            )

    def load_state(
        self,
        *,
        execution: dict[str, ContextSnapshot],
        relationships: Iterable[SubtaskRelationship],
        global_context: dict[str, ContextSnapshot],
    ) -> None:
        with self._lock:
            self._execution.update(execution)
            for relationship in relationships:
                self._relationships[relationship.parent_id] = relationship.model_copy(deep=True)
            self._global.update(global_context)

    def clear(self, identifier: str) -> bool:
        """Evict ``identifier`` from all three namespaces."""

        with self._lock:
            removed = [
                self._execution.pop(identifier, None) is not None,
                self._relationships.pop(identifier, None) is not None,
                self._global.pop(identifier, None) is not None,
            ]
        return any(removed)


__all__ = ["ContextPreservationManager"]
