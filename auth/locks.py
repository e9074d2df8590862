"""
auth/locks.py -- Per-key mutual exclusion for shared session and throttle state.

Requests for different keys (session ids, client addresses) never wait on
each other. Only requests touching the same key are serialized.

The registry holds weak references: a key's lock disappears once no thread
is holding or waiting on it, so the registry does not grow with the number
of clients ever seen.
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        # Guards the registry lookup only, never held while a key's lock is held.
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield
