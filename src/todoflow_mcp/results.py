"""Tagged result variants returned by every tool."""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from .errors import TodoflowError


class ToolError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ToolSuccess(BaseModel):
    ok: Literal[True] = True
    operation: str
    data: Any = None


class ToolFailure(BaseModel):
    ok: Literal[False] = False
    operation: str
    error: ToolError


ToolResult = Union[ToolSuccess, ToolFailure]


def success(operation: str, data: Any = None) -> dict[str, Any]:
    return ToolSuccess(operation=operation, data=data).model_dump(mode="json")


def failure(operation: str, exc: TodoflowError) -> dict[str, Any]:
    return ToolFailure(operation=operation, error=ToolError(**exc.to_dict())).model_dump(
        mode="json"
    )


__all__ = ["ToolError", "ToolFailure", "ToolResult", "ToolSuccess", "failure", "success"]
