"""
tests/test_user_store.py -- Unit tests for auth/store.py (UserStore).

Uses the shared-memory user_store fixture from conftest.py.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password
from core.errors import StoreUnavailableError


def _make(store: UserStore, username: str, password: str = "password-1", **extra) -> int:
    return store.create(User(username=username, hashed_password=hash_password(password), **extra))


class TestCreateAndRead:
    def test_create_returns_id_and_sets_created_at(self, user_store: UserStore) -> None:
        uid = _make(user_store, "bob", email="bob@example.com")
        user = user_store.get_by_id(uid)
        assert user.username == "bob"
        assert user.email == "bob@example.com"
        assert user.created_at
        assert user.updated_at is None

    def test_duplicate_username_raises_integrity_error(self, user_store: UserStore) -> None:
        _make(user_store, "bob")
        with pytest.raises(IntegrityError):
            _make(user_store, "bob")

    def test_find_by_username_is_exact(self, user_store: UserStore) -> None:
        _make(user_store, "bob")
        assert user_store.find_by_username("bob") is not None
        assert user_store.find_by_username("Bob") is None
        assert user_store.find_by_username("nobody") is None

    def test_list_all_ordered_by_username(self, user_store: UserStore) -> None:
        for name in ("carol", "alice", "bob"):
            _make(user_store, name)
        assert [u.username for u in user_store.list_all()] == ["alice", "bob", "carol"]

    def test_has_users(self, user_store: UserStore) -> None:
        assert not user_store.has_users()
        _make(user_store, "bob")
        assert user_store.has_users()

    def test_password_never_stored_in_plaintext(self, user_store: UserStore) -> None:
        uid = _make(user_store, "bob", password="hunter2-hunter2")
        assert "hunter2" not in user_store.get_by_id(uid).hashed_password


class TestVerifyPassword:
    def test_verify_password(self, user_store: UserStore) -> None:
        _make(user_store, "bob", password="correct-horse")
        record = user_store.find_by_username("bob")
        assert user_store.verify_password(record, "correct-horse")
        assert not user_store.verify_password(record, "wrong-horse")

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert not UserStore.verify_password(User(username="x", hashed_password="not-bcrypt"), "anything")

    def test_authenticate_user(self, user_store: UserStore) -> None:
        _make(user_store, "bob", password="correct-horse")
        assert authenticate_user(user_store, "bob", "correct-horse").username == "bob"
        assert authenticate_user(user_store, "bob", "nope") is None
        assert authenticate_user(user_store, "ghost", "correct-horse") is None


class TestUpdateAndDelete:
    def test_update_fields(self, user_store: UserStore) -> None:
        uid = _make(user_store, "bob")
        assert user_store.update(uid, full_name="Bob Builder", email="b@example.com")
        user = user_store.get_by_id(uid)
        assert user.full_name == "Bob Builder"
        assert user.updated_at is not None

    def test_update_missing_user_returns_false(self, user_store: UserStore) -> None:
        assert not user_store.update(999, full_name="Nobody")

    def test_update_unknown_field_raises(self, user_store: UserStore) -> None:
        uid = _make(user_store, "bob")
        with pytest.raises(ValueError):
            user_store.update(uid, is_admin=True)

    def test_update_to_taken_username_raises(self, user_store: UserStore) -> None:
        _make(user_store, "alice")
        uid = _make(user_store, "bob")
        with pytest.raises(IntegrityError):
            user_store.update(uid, username="alice")

    def test_delete(self, user_store: UserStore) -> None:
        uid = _make(user_store, "bob")
        assert user_store.delete(uid)
        assert user_store.get_by_id(uid) is None
        assert not user_store.delete(uid)


def test_unreachable_database_raises_store_unavailable() -> None:
    with pytest.raises(StoreUnavailableError):
        UserStore("sqlite:////nonexistent-dir/useradmin.db")
