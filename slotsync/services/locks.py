"""
In-process mutex keyed by an arbitrary string.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One ``threading.Lock`` per key, created on demand and dropped when idle.

    Holders of different keys never contend; holders of the same key run
    one at a time.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: object) -> Iterator[None]:
        name = str(key)
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
                self._holders[name] = 0
            self._holders[name] += 1

        if lock.locked():
            logger.debug("Waiting for lock on %s", name)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[name] -= 1
                if self._holders[name] == 0:
                    del self._holders[name]
                    del self._locks[name]

    def is_held(self, key: object) -> bool:
        with self._guard:
            lock = self._locks.get(str(key))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every synchronizer in the process unless one is passed explicitly.
REHEARSAL_LOCKS = KeyedLock()
