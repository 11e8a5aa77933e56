"""
locks.py - Per-Key Single-Writer Locks

The in-process stand-in for a row lock (SELECT ... FOR UPDATE): every
state-changing operation on one contract or transaction runs inside
``hold(key)``, so two writers on the same key serialize and writers on
different keys never wait on each other.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, Iterator
import threading


class KeyedLocks:
    """A lazily-created lock per key."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the writer lock for ``key`` for the duration of the block."""
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
