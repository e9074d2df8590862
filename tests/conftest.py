"""
tests/conftest.py -- Shared test fixtures for User Admin.

This module provides:
  - FakeClock: controllable time source for session expiry and throttle windows
  - user_store: isolated shared-memory SQLite UserStore per test
  - client: TestClient over the real app with a patched lifespan
            (follow_redirects=False so tests can assert on Location headers)
  - alice: a registered user; logged_in_client: client with alice's session
  - csrf_token: fetches the CSRF token embedded in a rendered page

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
databases are per-connection and would present a blank schema to each
worker thread.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any app import:
get_settings() is read at import time by auth/tokens.py and api/main.py.
"""

from __future__ import annotations

import os
import re
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import attach_services
from asgi import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

ALICE_PASSWORD = "wonderland-42"

_CSRF_RE = re.compile(r'name="_csrf" value="([^"]+)"')


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def extract_csrf(html: str) -> str:
    match = _CSRF_RE.search(html)
    assert match, "page does not embed a CSRF token"
    return match.group(1)


def _patch_lifespan(user_store: UserStore, clock: FakeClock):
    """Return a lifespan that wires test stores and the fake clock into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, get_settings(), user_store, clock=clock)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    url = f"sqlite:///file:test_users_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = UserStore(db_url=url)
    yield store
    store.close()


@pytest.fixture
def alice(user_store: UserStore) -> User:
    uid = user_store.create(
        User(
            username="alice",
            hashed_password=hash_password(ALICE_PASSWORD),
            email="alice@example.com",
            full_name="Alice Liddell",
        )
    )
    return user_store.get_by_id(uid)


@pytest.fixture
def client(user_store: UserStore, clock: FakeClock) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(user_store, clock)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def csrf_token(client: TestClient) -> Callable[..., str]:
    """Return a function that loads a page and returns its embedded CSRF token."""

    def _fetch(path: str = "/register") -> str:
        resp = client.get(path)
        assert resp.status_code == 200, f"GET {path} -> {resp.status_code}"
        return extract_csrf(resp.text)

    return _fetch


@pytest.fixture
def login(client: TestClient) -> Callable[..., object]:
    """Return a function that submits the login form (defaults to alice's credentials)."""

    def _login(username: str = "alice", password: str = ALICE_PASSWORD, next_url: str | None = None):
        data = {"username": username, "password": password}
        if next_url is not None:
            data["next"] = next_url
        return client.post("/login", data=data)

    return _login


@pytest.fixture
def logged_in_client(client: TestClient, alice: User, login) -> TestClient:
    resp = login()
    assert resp.status_code == 303, resp.text
    return client
