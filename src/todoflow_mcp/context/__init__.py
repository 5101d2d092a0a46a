"""Context snapshots and subtask relationship tracking."""

from .manager import ContextPreservationManager
from .models import ContextSnapshot, SNAPSHOT_SCHEMA_VERSION, SubtaskRelationship

__all__ = [
    "ContextPreservationManager",
    "ContextSnapshot",
    "SNAPSHOT_SCHEMA_VERSION",
    "SubtaskRelationship",
]
