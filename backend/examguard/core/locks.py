import threading
import weakref
from contextlib import contextmanager


class SessionLockRegistry:
    """
    One lock per exam session; sessions never contend with each other.

    Entries are weak: a lock lives only while some thread holds or waits on
    it, so abandoned sessions leave nothing behind.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str):
        lock = self.lock_for(session_id)
        with lock:
            yield

    def __len__(self):
        with self._guard:
            return len(self._locks)


session_locks = SessionLockRegistry()
