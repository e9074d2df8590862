"""
tests/test_sessions.py -- Unit tests for auth/sessions.py.

Covers:
  - start_or_resume: fresh session for missing/unknown/expired cookies, resume for live ones
  - Idle and absolute expiry driven by FakeClock
  - persist(), bind_identity() and data writes never resurrect a destroyed or purged session
  - persist() keeps concurrent identity/data changes
  - ensure_value() creates a value once
  - destroy() and purge_expired() on both store backends
"""

from __future__ import annotations

import threading
import uuid

import pytest
from starlette.requests import Request

from auth.sessions import MemorySessionStore, SessionManager, SqlSessionStore, session_store_from_url


def _request(cookie: str | None = None) -> Request:
    headers = [(b"cookie", f"sid={cookie}".encode())] if cookie else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield MemorySessionStore()
        return
    sql = SqlSessionStore(f"sqlite:///file:test_sessions_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield sql
    sql.close()


@pytest.fixture
def manager(store, clock) -> SessionManager:
    return SessionManager(store, idle_timeout=1800, absolute_timeout=8 * 3600, clock=clock, cookie_name="sid")


class TestStartOrResume:
    def test_no_cookie_starts_new_persisted_session(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        assert session.is_new
        assert session.user_id is None
        assert manager.store.load(session.id) is not None

    def test_unknown_cookie_starts_new_session(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request("not-a-real-id"))
        assert session.is_new
        assert session.id != "not-a-real-id"

    def test_live_cookie_resumes(self, manager: SessionManager) -> None:
        first = manager.start_or_resume(_request())
        manager.bind_identity(first, 7)
        resumed = manager.start_or_resume(_request(first.id))
        assert not resumed.is_new
        assert resumed.id == first.id
        assert resumed.user_id == 7

    def test_session_ids_are_unique(self, manager: SessionManager) -> None:
        ids = {manager.start_or_resume(_request()).id for _ in range(20)}
        assert len(ids) == 20


class TestExpiry:
    def test_idle_timeout(self, manager: SessionManager, clock) -> None:
        session = manager.start_or_resume(_request())
        clock.advance(1801)
        assert manager.resolve_session(session.id) is None
        assert manager.start_or_resume(_request(session.id)).id != session.id

    def test_activity_extends_idle_window(self, manager: SessionManager, clock) -> None:
        session = manager.start_or_resume(_request())
        for _ in range(3):
            clock.advance(1000)
            resumed = manager.resolve_session(session.id)
            assert resumed is not None
            manager.persist(resumed)

    def test_absolute_timeout_despite_activity(self, manager: SessionManager, clock) -> None:
        session = manager.start_or_resume(_request())
        for _ in range(8 * 3600 // 1500):
            clock.advance(1500)
            manager.persist(manager.resolve_session(session.id))
        clock.advance(1500)
        assert manager.resolve_session(session.id) is None

    def test_resolve_does_not_touch_last_seen(self, manager: SessionManager, clock) -> None:
        session = manager.start_or_resume(_request())
        clock.advance(100)
        manager.resolve_session(session.id)
        assert manager.store.load(session.id).last_seen_at == session.created_at


class TestConcurrentMutation:
    def test_persist_keeps_concurrent_login(self, manager: SessionManager) -> None:
        """A request that only touches the session must not undo another request's login."""
        session = manager.start_or_resume(_request())
        stale_copy = manager.resolve_session(session.id)
        login_copy = manager.resolve_session(session.id)

        manager.bind_identity(login_copy, 42)
        manager.persist(stale_copy)

        assert manager.store.load(session.id).user_id == 42

    def test_persist_does_not_resurrect_destroyed_session(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        other_request = manager.resolve_session(session.id)
        manager.destroy(session)
        manager.persist(other_request)
        assert manager.store.load(session.id) is None

    def test_bind_identity_does_not_resurrect_destroyed_session(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        other_request = manager.resolve_session(session.id)
        manager.destroy(session)
        assert manager.bind_identity(other_request, 42) is False
        assert manager.resolve_session(session.id) is None
        assert manager.store.load(session.id) is None
        assert other_request.destroyed
        assert not manager.is_authenticated(other_request)

    def test_data_writes_do_not_resurrect_destroyed_session(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        other_request = manager.resolve_session(session.id)
        manager.destroy(session)
        assert manager.ensure_value(other_request, "csrf_secret", lambda: "late") == "late"
        manager.set_value(other_request, "flash", "hello")
        assert manager.store.load(session.id) is None
        assert other_request.data == {}

    def test_bind_identity_does_not_revive_purged_session(self, manager: SessionManager, clock) -> None:
        session = manager.start_or_resume(_request())
        stale = manager.resolve_session(session.id)
        clock.advance(manager.idle_timeout + 1)
        assert manager.purge_expired() == 1
        assert manager.bind_identity(stale, 7) is False
        assert manager.store.load(session.id) is None

    def test_ensure_value_runs_factory_once(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        copies = [manager.resolve_session(session.id) for _ in range(8)]
        calls = []
        results = []
        barrier = threading.Barrier(len(copies))

        def factory() -> str:
            calls.append(1)
            return f"value-{len(calls)}"

        def worker(copy) -> None:
            barrier.wait()
            results.append(manager.ensure_value(copy, "k", factory))

        threads = [threading.Thread(target=worker, args=(c,)) for c in copies]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert set(results) == {"value-1"}


class TestDestroyAndPurge:
    def test_destroy_clears_identity(self, manager: SessionManager) -> None:
        session = manager.start_or_resume(_request())
        manager.bind_identity(session, 3)
        manager.set_value(session, "x", 1)
        manager.destroy(session)
        assert session.destroyed
        assert session.user_id is None
        assert session.data == {}
        assert not SessionManager.is_authenticated(session)
        assert manager.resolve_session(session.id) is None

    def test_purge_removes_only_expired(self, manager: SessionManager, clock) -> None:
        old = manager.start_or_resume(_request())
        clock.advance(1000)
        fresh = manager.start_or_resume(_request())
        clock.advance(900)
        assert manager.purge_expired() == 1
        assert manager.store.load(old.id) is None
        assert manager.store.load(fresh.id) is not None


def test_set_value_round_trips_through_store(store, clock) -> None:
    manager = SessionManager(store, clock=clock, cookie_name="sid")
    session = manager.start_or_resume(_request())
    manager.set_value(session, "theme", "dark")
    assert manager.resolve_session(session.id).data == {"theme": "dark"}


def test_session_store_from_url_defaults_to_memory() -> None:
    assert isinstance(session_store_from_url(""), MemorySessionStore)
