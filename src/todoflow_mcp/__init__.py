"""Todoflow MCP: workflow, session and context orchestration for agents."""

__version__ = "0.1.0"

__all__ = ["__version__"]
