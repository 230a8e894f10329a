"""
In-process locking primitives.

- ReadWriteLock: many readers or one writer
- KeyedLocks: one lock per key (RenovateJob fullname), created on demand

Locks are process-local. Mutual exclusion across replicas is left to
leader election: only the elected leader runs the executor and scheduler.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Generator, Generic, TypeVar

logger = logging.getLogger(__name__)

L = TypeVar("L")


class ReadWriteLock:
    """
    Readers-writer lock.

    Readers share access; a writer waits until all readers are gone and
    blocks new readers while it waits.

    Example:
        lock = ReadWriteLock()

        with lock.read():
            load_state()

        with lock.write():
            load_state()
            store_state()
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def try_acquire_write(self) -> bool:
        """Acquire the write side only if it is free right now."""
        with self._cond:
            if self._writer or self._readers:
                return False
            self._writer = True
            return True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Generator[None, None, None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Generator[None, None, None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class KeyedLocks(Generic[L]):
    """
    Registry of per-key locks.

    Lock creation is guarded by a meta lock so two threads asking for the
    same key at the same time get the same lock object.

    Example:
        executor_locks = KeyedLocks(threading.Lock)
        lock = executor_locks.get("renovate-default")
        if lock.acquire(blocking=False):
            ...
    """

    def __init__(self, factory: Callable[[], L]):
        self._factory = factory
        self._locks: Dict[str, L] = {}
        self._meta_lock = threading.Lock()

    def get(self, key: str) -> L:
        """Get or create the lock for a key."""
        with self._meta_lock:
            if key not in self._locks:
                logger.debug(f"Creating new lock for: {key}")
                self._locks[key] = self._factory()
            return self._locks[key]

    def keys(self) -> list:
        with self._meta_lock:
            return list(self._locks.keys())
