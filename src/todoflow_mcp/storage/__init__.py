"""Persistence for Todoflow: state snapshots and the event journal."""

from .journal import EventJournal, JournalEvent, JournalUnavailableError
from .snapshot import (
    LoadReport,
    QuarantinedEntity,
    STATE_SCHEMA_VERSION,
    StateSnapshot,
    parse_snapshot,
    read_snapshot,
    write_snapshot,
)

__all__ = [
    "EventJournal",
    "JournalEvent",
    "JournalUnavailableError",
    "LoadReport",
    "QuarantinedEntity",
    "STATE_SCHEMA_VERSION",
    "StateSnapshot",
    "parse_snapshot",
    "read_snapshot",
    "write_snapshot",
]
