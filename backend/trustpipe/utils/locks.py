"""
Per-key locks for read-modify-write updates of one document.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """A lazily created lock per key, shared by every thread of the process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield
