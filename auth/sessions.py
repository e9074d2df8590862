"""
auth/sessions.py -- Server-side sessions: storage backends and lifecycle manager.

Pattern: Repository (SessionStore) + Manager. The manager owns every rule
(expiry, identity binding, per-key serialization); stores only load and save.

Lookup is separated from mutation:
  resolve_session(cookie_value) -- pure lookup, unknown/expired -> None.
  persist(session)              -- explicit save.

Concurrency: every mutation is a read-modify-write under the session id's
lock from KeyedLocks. A request that binds an identity and a concurrent
request that only touches last_seen_at therefore cannot overwrite each
other's changes.

Expiry: a session is dead once it has been idle longer than idle_timeout or
has existed longer than absolute_timeout. Dead sessions are treated exactly
like unknown ones. Callers never learn whether an id existed.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from fastapi import Request
from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from auth.locks import KeyedLocks
from auth.models import Session
from auth.tokens import generate_session_id
from core.config import get_settings
from core.errors import StoreUnavailableError

logger = logging.getLogger("useradmin.auth")

Clock = Callable[[], float]


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    def load(self, session_id: str) -> Session | None: ...

    def save(self, session: Session) -> None: ...

    def delete(self, session_id: str) -> None: ...

    def purge_expired(self, idle_cutoff: float, absolute_cutoff: float) -> int: ...


def _detached(session: Session) -> Session:
    # Stores hand out copies so a caller's object never aliases stored state.
    return dataclasses.replace(session, data=dict(session.data), is_new=False, destroyed=False)


class MemorySessionStore:
    """In-process session store. Sessions do not survive a restart."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def load(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return _detached(session) if session is not None else None

    def save(self, session: Session) -> None:
        self._sessions[session.id] = _detached(session)

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def purge_expired(self, idle_cutoff: float, absolute_cutoff: float) -> int:
        expired = [
            sid
            for sid, s in list(self._sessions.items())
            if s.last_seen_at < idle_cutoff or s.created_at < absolute_cutoff
        ]
        for sid in expired:
            self._sessions.pop(sid, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer),  # NULL until login
    Column("data", Text, nullable=False),  # JSON object
    Column("created_at", Float, nullable=False),
    Column("last_seen_at", Float, nullable=False, index=True),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SqlSessionStore:
    """SQLAlchemy Core session store for deployments that share sessions
    between processes (SQLite file, PostgreSQL, ...).

    OperationalError from the driver is re-raised as StoreUnavailableError.
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except OperationalError as exc:
            raise StoreUnavailableError(f"Session store unreachable: {exc.orig}") from exc

    def load(self, session_id: str) -> Session | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        except OperationalError as exc:
            raise StoreUnavailableError("Session store unreachable") from exc
        if row is None:
            return None
        return Session(
            id=row.id,
            user_id=row.user_id,
            data=json.loads(row.data),
            created_at=row.created_at,
            last_seen_at=row.last_seen_at,
        )

    def save(self, session: Session) -> None:
        values = {
            "user_id": session.user_id,
            "data": json.dumps(session.data),
            "created_at": session.created_at,
            "last_seen_at": session.last_seen_at,
        }
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_sessions.update().where(_sessions.c.id == session.id).values(**values))
                if result.rowcount == 0:
                    conn.execute(_sessions.insert().values(id=session.id, **values))
                conn.commit()
        except OperationalError as exc:
            raise StoreUnavailableError("Session store unreachable") from exc

    def delete(self, session_id: str) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
                conn.commit()
        except OperationalError as exc:
            raise StoreUnavailableError("Session store unreachable") from exc

    def purge_expired(self, idle_cutoff: float, absolute_cutoff: float) -> int:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sessions.delete().where(
                        (_sessions.c.last_seen_at < idle_cutoff) | (_sessions.c.created_at < absolute_cutoff)
                    )
                )
                conn.commit()
        except OperationalError as exc:
            raise StoreUnavailableError("Session store unreachable") from exc
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def session_store_from_url(url: str) -> SessionStore:
    """Empty URL -> MemorySessionStore, anything else -> SqlSessionStore(url)."""
    if not url:
        return MemorySessionStore()
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///file:"):
        # Relative SQLite paths resolve against the project root, not the CWD.
        path = Path(url[len("sqlite:///") :])
        if not path.is_absolute():
            url = f"sqlite:///{Path(__file__).resolve().parent.parent / path}"
    return SqlSessionStore(url)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issues, resumes, mutates and destroys sessions.

    Usage (the session middleware does the first and last step):
        session = manager.start_or_resume(request)
        manager.bind_identity(session, user.id)
        manager.is_authenticated(session)   # True
        manager.destroy(session)
    """

    def __init__(
        self,
        store: SessionStore,
        idle_timeout: int = 1800,
        absolute_timeout: int = 8 * 3600,
        clock: Clock = time.time,
        cookie_name: str | None = None,
    ) -> None:
        self.store = store
        self.idle_timeout = idle_timeout
        self.absolute_timeout = absolute_timeout
        self.cookie_name = cookie_name or get_settings().session_cookie_name
        self._clock = clock
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_seen_at > self.idle_timeout or now - session.created_at > self.absolute_timeout

    def resolve_session(self, cookie_value: str | None) -> Session | None:
        """Return the live session named by cookie_value, or None.

        Pure: never creates, deletes or touches anything. Expired sessions are
        left for purge_expired().
        """
        if not cookie_value:
            return None
        session = self.store.load(cookie_value)
        if session is None or self._is_expired(session, self._clock()):
            return None
        return session

    def start_or_resume(self, request: Request) -> Session:
        """Resume the request's session or start a fresh, unauthenticated one.

        A fresh session is persisted immediately and flagged is_new so the
        middleware knows to send the cookie.
        """
        session = self.resolve_session(request.cookies.get(self.cookie_name))
        if session is not None:
            return session
        now = self._clock()
        session = Session(id=generate_session_id(), created_at=now, last_seen_at=now, is_new=True)
        self.persist(session)
        return session

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def persist(self, session: Session) -> None:
        """Save a session and stamp last_seen_at.

        For a session that already exists in the store, only last_seen_at is
        taken from the caller's copy; identity and data keep whatever
        concurrent requests committed. A destroyed session is not resurrected.
        """
        if session.destroyed:
            return
        now = self._clock()
        with self._locks.hold(session.id):
            current = self.store.load(session.id)
            if current is None:
                if not session.is_new:
                    return  # destroyed or purged by another request meanwhile
                current = session
            current.last_seen_at = now
            self.store.save(current)
        session.last_seen_at = now

    def _mutate(self, session: Session, change: Callable[[Session], Any]) -> Any:
        """Apply change() to the stored copy of session and save it.

        If another request destroyed or purged the session meanwhile, nothing
        is saved: change() runs on a throwaway copy and the caller's session
        is marked destroyed, so a dead id never comes back.
        """
        if session.destroyed:
            return change(dataclasses.replace(session, data={}))
        with self._locks.hold(session.id):
            current = self.store.load(session.id)
            if current is None and session.is_new:
                current = dataclasses.replace(session, data=dict(session.data))
            if current is not None:
                result = change(current)
                self.store.save(current)
        if current is None:
            self._mark_destroyed(session)
            return change(dataclasses.replace(session, data={}))
        session.user_id = current.user_id
        session.data = dict(current.data)
        return result

    @staticmethod
    def _mark_destroyed(session: Session) -> None:
        session.destroyed = True
        session.user_id = None
        session.data = {}

    def bind_identity(self, session: Session, user_id: int) -> bool:
        """Bind user_id to the session. False if the session no longer exists."""

        def _bind(s: Session) -> None:
            s.user_id = user_id

        self._mutate(session, _bind)
        if session.destroyed:
            logger.info("Identity not bound: session ended by a concurrent request")
            return False
        logger.info("Session bound to user_id=%s", user_id)
        return True

    def set_value(self, session: Session, key: str, value: Any) -> None:
        def _set(s: Session) -> None:
            s.data[key] = value

        self._mutate(session, _set)

    def ensure_value(self, session: Session, key: str, factory: Callable[[], Any]) -> Any:
        """Return session.data[key], creating it with factory() exactly once.

        Two concurrent first requests on one session agree on the same value.
        """
        if key in session.data:
            return session.data[key]

        def _ensure(s: Session) -> Any:
            if key not in s.data:
                s.data[key] = factory()
            return s.data[key]

        return self._mutate(session, _ensure)

    def destroy(self, session: Session) -> None:
        with self._locks.hold(session.id):
            self.store.delete(session.id)
        self._mark_destroyed(session)
        logger.info("Session destroyed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_authenticated(session: Session | None) -> bool:
        return session is not None and not session.destroyed and session.user_id is not None

    def purge_expired(self) -> int:
        now = self._clock()
        return self.store.purge_expired(now - self.idle_timeout, now - self.absolute_timeout)
