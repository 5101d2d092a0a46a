"""Versioned context snapshots and subtask relationship records."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_core import PydanticSerializationError, to_json

from ..errors import InvalidInputError

SNAPSHOT_SCHEMA_VERSION = 1


class ContextSnapshot(BaseModel):
    """Serialized copy of a JSON-compatible value.

    Snapshots never hold a reference to the captured object; ``restore`` decodes
    a fresh value on every call, so neither the caller's original nor any restored
    copy can mutate what is stored.
    """

    model_config = {"frozen": True}

    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    encoding: Literal["json"] = "json"
    payload: str

    @classmethod
    def capture(cls, value: Any) -> "ContextSnapshot":
        try:
            encoded = to_json(value).decode("utf-8")
        except PydanticSerializationError as exc:
            raise InvalidInputError(
                "context", f"Context value is not serializable: {exc}"
            ) from exc
        if json.loads(encoded) != value:
            raise InvalidInputError(
                "context",
                "Context value does not survive a JSON round trip; "
                "use lists, string keys and plain scalars",
            )
        return cls(payload=encoded)

    def restore(self) -> Any:
        return json.loads(self.payload)


class SubtaskRelationship(BaseModel):
    """Fixed parent-to-children completion tracking record."""

    parent_id: str
    child_ids: tuple[str, ...]
    completed_children: list[str] = Field(default_factory=list)
    next_parent_step: str = ""
    parent_context: ContextSnapshot

    @property
    def all_complete(self) -> bool:
        return bool(self.child_ids) and set(self.completed_children) >= set(self.child_ids)

    @property
    def pending_children(self) -> list[str]:
        return [child for child in self.child_ids if child not in self.completed_children]


__all__ = ["ContextSnapshot", "SNAPSHOT_SCHEMA_VERSION", "SubtaskRelationship"]
