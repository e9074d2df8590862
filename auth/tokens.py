"""
auth/tokens.py -- Password hashing, session identifiers and CSRF token primitives.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The _DUMMY_HASH
       constant enables timing equalization in authenticate_user() so response
       time does not reveal whether a username exists.

  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The id is
       an opaque lookup key only -- it carries no claims, all state stays on
       the server.

  CSRF tokens: each session holds a random secret; the token handed to pages
       is HMAC-SHA256(SECRET_KEY, secret). The secret never leaves the server
       and a token minted for one session cannot match another session's secret.

  SECRET_KEY and BCRYPT_ROUNDS come from core.config.get_settings().

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("useradmin.auth")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the form models cap passwords at 72
    characters so nothing is silently dropped for ASCII input.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("useradmin_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. StoreUnavailableError
    from the store propagates -- an unreachable store is not a bad password.
    """
    user = store.find_by_username(username)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not store.verify_password(user, password):
        return None
    return user


# ---------------------------------------------------------------------------
# Session identifiers
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def set_session_cookie(response, session_id: str) -> None:
    """Write the session id cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    No max_age: expiry is enforced server-side (idle + absolute timeouts), so
    a browser-session cookie is enough.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(_settings.session_cookie_name, path="/")


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


def generate_csrf_secret() -> str:
    return secrets.token_hex(32)


def sign_csrf_secret(secret: str, signing_key: str) -> str:
    """Return the public CSRF token for a session secret."""
    return hmac.new(signing_key.encode(), secret.encode(), hashlib.sha256).hexdigest()
