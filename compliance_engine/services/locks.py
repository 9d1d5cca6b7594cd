"""Per-item mutual exclusion."""
import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLock:
    """
    One re-entrant lock per key, held only while someone uses it.

    All mutations of a compliance item, including gap changes that flip its
    status, run while holding the lock for that item's id. An entry is
    dropped as soon as its last holder or waiter lets go, so unknown ids
    never accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, List] = {}

    def _acquire_entry(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)
