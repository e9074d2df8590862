"""
auth/throttle.py -- Brute-force throttling for the login form.

Fixed-window counter per client key (the remote address):

    FRESH --attempt--> COUNTING --(count = max)--> BLOCKED
      ^                                               |
      +------------- window elapsed ------------------+

The window opens at the first attempt and lasts window_seconds. Every login
submission counts, successful or not, and is counted before the credentials
are looked at. An attempt that pushes the count past max_attempts is
rejected without touching the credential store, and so is every later one
until the window elapses.

Limits are written in the limits/slowapi notation ("5/minute") so the
setting reads the same as a slowapi route decorator.

Backends (ThrottleStore):
  MemoryThrottleStore -- in-process, per-key locks, injectable clock.
  LimitsThrottleStore -- any limits storage URI ("memory://", "redis://...").
      Shares counters between processes; expiry is handled by the backend's
      own wall clock.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from limits import parse
from limits.storage import storage_from_string

from auth.locks import KeyedLocks
from auth.models import AttemptRecord

logger = logging.getLogger("useradmin.auth")

Clock = Callable[[], float]


class ThrottleState(str, Enum):
    fresh = "fresh"
    counting = "counting"
    blocked = "blocked"


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    count: int
    retry_after: int  # seconds until the window resets; 0 when allowed


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class ThrottleStore(Protocol):
    def hit(self, key: str, window_seconds: int, now: float) -> AttemptRecord: ...

    def get(self, key: str, window_seconds: int, now: float) -> AttemptRecord | None: ...

    def reset(self, key: str) -> None: ...

    def purge_expired(self, window_seconds: int, now: float) -> int: ...


class MemoryThrottleStore:
    """Process-wide attempt counters. Increments for one key are serialized."""

    def __init__(self) -> None:
        self._records: dict[str, AttemptRecord] = {}
        self._locks = KeyedLocks()

    def hit(self, key: str, window_seconds: int, now: float) -> AttemptRecord:
        with self._locks.hold(key):
            record = self._records.get(key)
            if record is None or now - record.window_start >= window_seconds:
                record = AttemptRecord(count=1, window_start=now)
            else:
                record = AttemptRecord(count=record.count + 1, window_start=record.window_start)
            self._records[key] = record
            return record

    def get(self, key: str, window_seconds: int, now: float) -> AttemptRecord | None:
        record = self._records.get(key)
        if record is None or now - record.window_start >= window_seconds:
            return None
        return record

    def reset(self, key: str) -> None:
        with self._locks.hold(key):
            self._records.pop(key, None)

    def purge_expired(self, window_seconds: int, now: float) -> int:
        purged = 0
        for key, record in list(self._records.items()):
            if now - record.window_start >= window_seconds:
                with self._locks.hold(key):
                    current = self._records.get(key)
                    if current is not None and now - current.window_start >= window_seconds:
                        del self._records[key]
                        purged += 1
        return purged


class LimitsThrottleStore:
    """Counters kept in a limits storage backend.

    The backend's incr() is atomic per key and starts the expiry on the first
    increment, which is exactly a fixed window opened by the first attempt.
    """

    _PREFIX = "login-throttle/"

    def __init__(self, storage_uri: str) -> None:
        self.storage = storage_from_string(storage_uri)

    def hit(self, key: str, window_seconds: int, now: float) -> AttemptRecord:
        name = self._PREFIX + key
        count = self.storage.incr(name, window_seconds)
        return AttemptRecord(count=count, window_start=self.storage.get_expiry(name) - window_seconds)

    def get(self, key: str, window_seconds: int, now: float) -> AttemptRecord | None:
        name = self._PREFIX + key
        count = self.storage.get(name)
        if not count:
            return None
        return AttemptRecord(count=count, window_start=self.storage.get_expiry(name) - window_seconds)

    def reset(self, key: str) -> None:
        self.storage.clear(self._PREFIX + key)

    def purge_expired(self, window_seconds: int, now: float) -> int:
        # Backend expires keys itself
        return 0


def throttle_store_from_uri(uri: str) -> ThrottleStore:
    """Return MemoryThrottleStore for "memory://" (clock-controllable), else LimitsThrottleStore."""
    if uri == "memory://":
        return MemoryThrottleStore()
    return LimitsThrottleStore(uri)


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------


class LoginThrottle:
    def __init__(
        self,
        store: ThrottleStore,
        max_attempts: int = 5,
        window_seconds: int = 60,
        clock: Clock = time.time,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock

    @classmethod
    def from_rate_limit(cls, rate_limit: str, store: ThrottleStore, clock: Clock = time.time) -> LoginThrottle:
        """Build from a limits rate string, e.g. "5/minute" or "10 per 30 seconds"."""
        item = parse(rate_limit)
        return cls(store, max_attempts=item.amount, window_seconds=item.get_expiry(), clock=clock)

    def allow(self, client_key: str) -> bool:
        """True if one more attempt from client_key would be accepted. Does not count."""
        record = self.store.get(client_key, self.window_seconds, self._clock())
        return record is None or record.count < self.max_attempts

    def record_attempt(self, client_key: str) -> int:
        """Count one attempt and return the count inside the current window."""
        return self.store.hit(client_key, self.window_seconds, self._clock()).count

    def check_and_record(self, client_key: str) -> ThrottleDecision:
        """Count one attempt and decide on it in a single atomic step.

        allow() followed by record_attempt() would let concurrent requests
        all pass the check before any of them counts.
        """
        now = self._clock()
        record = self.store.hit(client_key, self.window_seconds, now)
        if record.count <= self.max_attempts:
            return ThrottleDecision(allowed=True, count=record.count, retry_after=0)
        retry_after = max(1, int(record.window_start + self.window_seconds - now + 0.999))
        logger.warning("Login throttled for %s (%d attempts in window)", client_key, record.count)
        return ThrottleDecision(allowed=False, count=record.count, retry_after=retry_after)

    def state(self, client_key: str) -> ThrottleState:
        record = self.store.get(client_key, self.window_seconds, self._clock())
        if record is None:
            return ThrottleState.fresh
        if record.count >= self.max_attempts:
            return ThrottleState.blocked
        return ThrottleState.counting

    def reset(self, client_key: str) -> None:
        self.store.reset(client_key)

    def purge_expired(self) -> int:
        return self.store.purge_expired(self.window_seconds, self._clock())
