"""
In-process keyed locks for root and derived-document mutations.

apply_changes / reject_changes hold the lock of their root for their whole
duration; regeneration requests hold the lock of their derived document.
Different keys never contend.

Threading: lock registries are in-memory dicts and only serialise threads
inside one worker.  Across workers the cascade applier relies on row locks
(``SELECT ... FOR UPDATE``), taken twice per apply: on the root while
validating and merging, then again on the root and every impacted derived
row while writing cascade outcomes.  Another worker may acquire the root
between the merge commit and the second lock; it then validates against
the merged root, and its writes and ours never interleave.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """Registry of one ``threading.Lock`` per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._get(key)
        with lock:
            yield

    def clear(self) -> None:
        """Drop all registered locks.  Test helper; never call while held."""
        with self._registry_lock:
            self._locks.clear()


root_locks = KeyedLocks()
document_locks = KeyedLocks()
