"""
auth/dependencies.py -- Request-level accessors for auth state.

The session middleware resolves the session once per request and stores it
on request.state; everything downstream reads it through these helpers
instead of touching cookies again.

try_get_session() / try_get_user_id() are the soft variants (None when
absent). client_key() names the requester for the login throttle.

Layer rule: no imports from web/. fastapi/starlette imports are allowed
because these helpers operate on the framework Request.
"""

from __future__ import annotations

from fastapi import Request
from slowapi.util import get_remote_address

from auth.models import Session
from auth.sessions import SessionManager


def try_get_session(request: Request) -> Session | None:
    return getattr(request.state, "session", None)


def try_get_user_id(request: Request) -> int | None:
    """Return the bound user id, or None for anonymous or missing sessions."""
    session = try_get_session(request)
    if not SessionManager.is_authenticated(session):
        return None
    return session.user_id


def client_key(request: Request) -> str:
    """Throttle key for the requester: the remote address, as slowapi keys it."""
    return get_remote_address(request)
