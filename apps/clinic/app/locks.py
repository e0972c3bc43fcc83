from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator, Tuple

SessionKey = Tuple[str, str, date]


class SessionLocks:
    """
    In-process mutex per session key (doctor_id, dispensary_id, date).

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the registry does not grow with every date ever booked.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[SessionKey, threading.Lock] = {}
        self._refs: Dict[SessionKey, int] = {}

    @contextmanager
    def hold(self, key: SessionKey) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    self._refs.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


session_locks = SessionLocks()
