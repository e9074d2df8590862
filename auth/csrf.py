"""
auth/csrf.py -- Synchronizer-token CSRF protection bound to server-side sessions.

Each session gets one random secret (stored in session.data, created on first
use). Pages embed the derived token; mutating requests must echo it back.
The token is stable for the lifetime of the session.

verify() uses hmac.compare_digest so comparison time does not depend on how
many leading characters match.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import logging

from auth.models import Session
from auth.sessions import SessionManager
from auth.tokens import generate_csrf_secret, sign_csrf_secret

logger = logging.getLogger("useradmin.auth")

SECRET_KEY = "csrf_secret"
FORM_FIELD = "_csrf"
HEADER_NAME = "X-CSRF-Token"


class CsrfGuard:
    def __init__(self, sessions: SessionManager, signing_key: str) -> None:
        self._sessions = sessions
        self._signing_key = signing_key

    def issue_token(self, session: Session) -> str:
        """Return the session's CSRF token, creating its secret if needed."""
        secret = self._sessions.ensure_value(session, SECRET_KEY, generate_csrf_secret)
        return sign_csrf_secret(secret, self._signing_key)

    def verify(self, session: Session | None, supplied_token: str | None) -> bool:
        if session is None or not supplied_token:
            return False
        secret = session.data.get(SECRET_KEY)
        if not secret:
            return False
        expected = sign_csrf_secret(secret, self._signing_key)
        return hmac.compare_digest(expected.encode(), supplied_token.encode())
