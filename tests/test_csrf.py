"""
tests/test_csrf.py -- Unit tests for auth/csrf.py.

The guard is tested against a real SessionManager over the memory store so
the token secret goes through the same session data path as in the app.
"""

from __future__ import annotations

import pytest
from starlette.requests import Request

from auth.csrf import SECRET_KEY, CsrfGuard
from auth.sessions import MemorySessionStore, SessionManager

SIGNING_KEY = "x" * 32


@pytest.fixture
def sessions(clock) -> SessionManager:
    return SessionManager(MemorySessionStore(), clock=clock, cookie_name="sid")


@pytest.fixture
def guard(sessions: SessionManager) -> CsrfGuard:
    return CsrfGuard(sessions, SIGNING_KEY)


def _new_session(sessions: SessionManager):
    return sessions.start_or_resume(Request({"type": "http", "headers": []}))


def test_token_is_stable_for_a_session(sessions, guard) -> None:
    session = _new_session(sessions)
    first = guard.issue_token(session)
    assert guard.issue_token(session) == first
    # Same session seen by a later request
    assert guard.issue_token(sessions.resolve_session(session.id)) == first


def test_issued_token_verifies(sessions, guard) -> None:
    session = _new_session(sessions)
    token = guard.issue_token(session)
    assert guard.verify(session, token)
    assert guard.verify(sessions.resolve_session(session.id), token)


def test_token_from_other_session_rejected(sessions, guard) -> None:
    mine = _new_session(sessions)
    theirs = _new_session(sessions)
    guard.issue_token(mine)
    their_token = guard.issue_token(theirs)
    assert not guard.verify(mine, their_token)


@pytest.mark.parametrize("supplied", [None, "", "not-a-token"])
def test_missing_or_wrong_token_rejected(sessions, guard, supplied) -> None:
    session = _new_session(sessions)
    guard.issue_token(session)
    assert not guard.verify(session, supplied)


def test_tampered_token_rejected(sessions, guard) -> None:
    session = _new_session(sessions)
    token = guard.issue_token(session)
    tampered = token[:-1] + ("0" if token[-1] != "0" else "1")
    assert not guard.verify(session, tampered)


def test_session_without_secret_rejects_everything(sessions, guard) -> None:
    session = _new_session(sessions)
    assert SECRET_KEY not in session.data
    assert not guard.verify(session, "anything")


def test_no_session_rejected(guard) -> None:
    assert not guard.verify(None, "anything")


def test_token_depends_on_signing_key(sessions) -> None:
    session = _new_session(sessions)
    token = CsrfGuard(sessions, SIGNING_KEY).issue_token(session)
    assert not CsrfGuard(sessions, "y" * 32).verify(session, token)


def test_destroyed_session_token_no_longer_valid(sessions, guard) -> None:
    session = _new_session(sessions)
    token = guard.issue_token(session)
    sessions.destroy(session)
    assert not guard.verify(session, token)
