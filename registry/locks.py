"""Per-name locking for registry writes."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class NameLocks:
    """One exclusive lock per dataset name.

    Names are compared case-insensitively, matching SQLite table names.
    Writers on the same name are serialized; writers on different names
    proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard: threading.Lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        name = name.lower()
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        with lock:
            yield
