"""
tests/test_register_routes.py -- Integration tests for self-registration.

Coverage:
  - Missing or foreign CSRF token -> 403 csrf_invalid and no user written
  - Invalid form -> 422 validation_failed, nothing written, values re-rendered
  - Duplicate username -> 422
  - Valid form -> 303 to /login?success=registered and the new user can log in
  - Registration can be switched off
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from core.config import get_settings

_VALID = {
    "username": "bob",
    "email": "bob@example.com",
    "full_name": "Bob Example",
    "password": "builder-123",
    "confirm_password": "builder-123",
}


class TestRegisterCsrf:
    def test_missing_token_rejected_without_write(self, client: TestClient, user_store) -> None:
        client.get("/register")
        resp = client.post("/register", data=_VALID)
        assert resp.status_code == 403
        assert 'data-code="csrf_invalid"' in resp.text
        assert user_store.find_by_username("bob") is None

    def test_token_from_another_session_rejected(self, client: TestClient, csrf_token, user_store) -> None:
        foreign_token = csrf_token()
        client.cookies.clear()
        client.get("/register")
        resp = client.post("/register", data={**_VALID, "_csrf": foreign_token})
        assert resp.status_code == 403
        assert user_store.find_by_username("bob") is None


class TestRegisterValidation:
    def test_success(self, client: TestClient, csrf_token, user_store, login) -> None:
        resp = client.post("/register", data={**_VALID, "_csrf": csrf_token()})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login?success=registered"
        stored = user_store.find_by_username("bob")
        assert stored.email == "bob@example.com"
        assert stored.hashed_password != "builder-123"
        assert login("bob", "builder-123").status_code == 303

    def test_success_message_on_login_page(self, client: TestClient) -> None:
        assert "Account created." in client.get("/login?success=registered").text

    @pytest.mark.parametrize(
        "overrides",
        [
            {"username": "x"},
            {"username": "bad name"},
            {"password": "short", "confirm_password": "short"},
            {"confirm_password": "different-123"},
            {"email": "not-an-email"},
        ],
    )
    def test_invalid_form_is_422(self, client: TestClient, csrf_token, user_store, overrides) -> None:
        resp = client.post("/register", data={**_VALID, **overrides, "_csrf": csrf_token()})
        assert resp.status_code == 422
        assert 'data-code="validation_failed"' in resp.text
        assert not user_store.has_users()

    def test_invalid_form_keeps_values_but_not_password(self, client: TestClient, csrf_token) -> None:
        resp = client.post(
            "/register", data={**_VALID, "confirm_password": "different-123", "_csrf": csrf_token()}
        )
        assert 'value="Bob Example"' in resp.text
        assert "builder-123" not in resp.text

    def test_duplicate_username_is_422(self, client: TestClient, csrf_token, alice, user_store) -> None:
        resp = client.post("/register", data={**_VALID, "username": "alice", "_csrf": csrf_token()})
        assert resp.status_code == 422
        assert "already taken" in resp.text
        assert len(user_store.list_all()) == 1


class TestRegistrationDisabled:
    @pytest.fixture
    def registration_off(self, monkeypatch):
        settings = get_settings().model_copy(update={"self_registration_enabled": False})
        monkeypatch.setattr("web.templating.get_settings", lambda: settings)

    def test_form_is_404(self, client: TestClient, registration_off) -> None:
        resp = client.get("/register")
        assert resp.status_code == 404
        assert 'data-code="not_found"' in resp.text

    def test_post_is_404(self, client: TestClient, registration_off, user_store) -> None:
        resp = client.post("/register", data=_VALID)
        assert resp.status_code == 404
        assert not user_store.has_users()
