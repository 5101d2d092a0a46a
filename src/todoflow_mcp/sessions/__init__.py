"""Session isolation and per-session context memory."""

from .models import SessionContext, SessionStats
from .store import SessionStore

__all__ = ["SessionContext", "SessionStats", "SessionStore"]
