"""Per-key locks so work on one config or account never blocks another."""

import threading
from contextlib import contextmanager
from typing import Generator, Hashable


class KeyedRunLock:
    """Non-blocking per-key claim, safe across threads and event loops.

    A run claims its key with :meth:`try_acquire`; a second claim on the same
    key fails immediately instead of waiting, which is how callers detect an
    in-flight run. Keys are independent, so different configs run in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[Hashable] = set()

    def is_locked(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._held

    def try_acquire(self, key: Hashable) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._guard:
            self._held.discard(key)


class KeyedThreadLock:
    """One blocking :class:`threading.Lock` per key, e.g. per credit account."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}

    def _get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        with self._get(key):
            yield
