import threading
import weakref
from collections.abc import Hashable


class LockRegistry:
    """Hands out one re-entrant lock per key.

    An entry lives only while some caller still references its lock, so
    the registry does not grow with every employee ever touched. Locks are
    in-process only; a shared or networked blob backend would need a
    distributed lock in their place.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)

    def employee(self, employee_pk: str) -> threading.RLock:
        return self.get(("employee", employee_pk))

    def scope(self, employee_pk: str, category: str) -> threading.RLock:
        return self.get(("scope", employee_pk, category))
