"""
Readers-writer lock for the PolicyStore.
Any number of readers may hold the lock together; writers are exclusive.
Waiting writers block new readers so a steady read load cannot starve policy changes.
"""

import threading
from contextlib import contextmanager


class RWLock:
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def r_acquire(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def r_release(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def w_acquire(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers > 0:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def w_release(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.r_acquire()
        try:
            yield
        finally:
            self.r_release()

    @contextmanager
    def write_locked(self):
        self.w_acquire()
        try:
            yield
        finally:
            self.w_release()
