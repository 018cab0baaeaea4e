"""Per-entity mutual exclusion inside one process.

Each key (``conversation:42``, ``subscription:sub_123``) gets its own lock, held
only while a caller needs it; unrelated keys never wait on each other. Across
processes the row lock taken with ``SELECT ... FOR UPDATE`` does the same job.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


entity_locks = KeyedLock()


def conversation_key(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def subscription_key(subscription_ref: str) -> str:
    return f"subscription:{subscription_ref}"
