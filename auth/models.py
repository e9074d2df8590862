"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, managers and
routes do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class User:
    """A user record as owned by the credential store (auth/store.py).

    hashed_password is a bcrypt hash; the plaintext is never stored.
    id is None before the record is written to the database.
    """

    username: str
    hashed_password: str
    email: str | None = None
    full_name: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """Server-side state for one client, named by an opaque cookie value.

    user_id stays None until a login succeeds (SessionManager.bind_identity).
    data holds the CSRF secret and any other per-session values.

    Timestamps are epoch seconds from the manager's clock so expiry can be
    tested without sleeping.

    is_new / destroyed are per-request flags read by the session middleware;
    they are never persisted.
    """

    id: str
    created_at: float
    last_seen_at: float
    user_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = False
    destroyed: bool = False


@dataclass
class AttemptRecord:
    """Login attempts seen from one client key inside the current window."""

    count: int
    window_start: float  # epoch seconds of the first attempt in the window
