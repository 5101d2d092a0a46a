from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from todoflow_mcp.errors import InvalidInputError, SessionNotFoundError
from todoflow_mcp.sessions import SessionStore


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def test_activation_switches_the_single_active_session() -> None:
    store = SessionStore(clock=ManualClock())
    s1 = store.create_session("first")
    store.activate_session(s1)
    s2 = store.create_session("second")

    assert store.get_active_session().id == s1

    store.activate_session(s2)

    assert store.get_active_session().id == s2
    assert store.get(s1).is_active is False
    assert store.get(s2).is_active is True
    assert store.stats().active_sessions == 1


def test_activate_unknown_session_keeps_previous_active() -> None:
    store = SessionStore(clock=ManualClock())
    s1 = store.create_session("first")
    store.activate_session(s1)

    with pytest.raises(SessionNotFoundError):
        store.activate_session("session-missing")

    assert store.active_session_id == s1


def test_create_session_rejects_bad_and_duplicate_ids() -> None:
    store = SessionStore(clock=ManualClock())
    store.create_session("named", session_id="alpha")

    with pytest.raises(InvalidInputError):
        store.create_session("dup", session_id="alpha")
    with pytest.raises(InvalidInputError):
        store.create_session("bad", session_id="has spaces")


def test_cleanup_inactive_never_removes_active_session() -> None:
    clock = ManualClock()
    store = SessionStore(clock=clock)
    old_active = store.create_session("active but old")
    old_idle = store.create_session("idle and old")
    store.activate_session(old_active)

    clock.advance(hours=30)
    fresh = store.create_session("fresh")

    removed = store.cleanup_inactive(24)

    assert removed == [old_idle]
    assert store.exists(old_active)
    assert store.exists(fresh)


def test_sweep_expired_clears_active_pointer() -> None:
    clock = ManualClock()
    store = SessionStore(timeout_minutes=30, clock=clock)
    sid = store.create_session("short lived")
    store.activate_session(sid)

    clock.advance(minutes=31)
    swept = store.sweep_expired()

    assert swept == [sid]
    assert store.active_session_id is None
    assert store.get_active_session() is None


def test_get_active_session_refreshes_last_access() -> None:
    clock = ManualClock()
    store = SessionStore(timeout_minutes=30, clock=clock)
    sid = store.create_session("kept warm")
    store.activate_session(sid)

    clock.advance(minutes=20)
    store.get_active_session()
    clock.advance(minutes=20)

    assert store.sweep_expired() == []


def test_save_context_on_unknown_session_drops_with_warning(caplog) -> None:
    store = SessionStore(clock=ManualClock())
    caplog.set_level("WARNING", logger="todoflow_mcp.sessions.store")

    assert store.save_context("ghost", "key", {"a": 1}) is False
    assert "Dropping context for unknown session" in caplog.text
    assert store.get_context("ghost", "key") is None


def test_save_context_strict_raises() -> None:
    store = SessionStore(strict_context=True, clock=ManualClock())

    with pytest.raises(SessionNotFoundError):
        store.save_context("ghost", "key", {"a": 1})


def test_context_round_trip_is_isolated() -> None:
    store = SessionStore(clock=ManualClock())
    sid = store.create_session("memory")
    value = {"notes": ["one"], "depth": {"level": 1}}

    assert store.save_context(sid, "plan", value) is True
    value["notes"].append("mutated after save")

    restored = store.get_context(sid, "plan")
    assert restored == {"notes": ["one"], "depth": {"level": 1}}

    restored["depth"]["level"] = 99
    assert store.get_context(sid, "plan")["depth"]["level"] == 1


def test_workflow_links_and_parent_child_are_idempotent() -> None:
    store = SessionStore(clock=ManualClock())
    sid = store.create_session("links")

    assert store.link_workflow(sid, "workflow-1-abcdefghi") is True
    assert store.link_workflow(sid, "workflow-1-abcdefghi") is False
    assert store.session_workflows(sid) == ["workflow-1-abcdefghi"]

    store.set_execution_state(sid, "workflow-1-abcdefghi", {"current_task_index": 1})
    assert store.get_execution_state(sid, "workflow-1-abcdefghi") == {"current_task_index": 1}

    assert store.unlink_workflow(sid, "workflow-1-abcdefghi") is True
    assert store.get_execution_state(sid, "workflow-1-abcdefghi") is None

    assert store.record_parent_child(sid, "parent", "child-a") is True
    assert store.record_parent_child(sid, "parent", "child-a") is False
    assert store.child_tasks(sid, "parent") == ["child-a"]


def test_list_sessions_most_recent_first_and_stats() -> None:
    clock = ManualClock()
    store = SessionStore(clock=clock)
    first = store.create_session("first")
    clock.advance(minutes=5)
    second = store.create_session("second")

    assert [session.id for session in store.list_sessions()] == [second, first]

    stats = store.stats()
    assert stats.total_sessions == 2
    assert stats.active_sessions == 0
    assert stats.oldest_created_at < stats.newest_created_at
