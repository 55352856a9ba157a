"""
Entity Lock Module

Per-entity re-entrant locks. Every read-modify-write of an account balance
or a loan principal happens under the lock of that entity. Operations that
touch several entities acquire all of them up front in one global order,
sorted by (entity type, id), so two callers can never deadlock on a pair.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from .exceptions import LockTimeoutError

EntityKey = Tuple[str, int]


class EntityLockManager:
    """Hands out one RLock per (entity type, id) and acquires them in order"""

    def __init__(self, default_timeout: Optional[float] = 5.0):
        self.default_timeout = default_timeout
        self._locks: Dict[EntityKey, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: EntityKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: EntityKey, timeout: Optional[float] = None):
        """
        Acquire the locks for all keys, in global order, for the block

        Args:
            keys: (entity type, id) pairs, e.g. ("loan", 7)
            timeout: Seconds to wait across all keys; None uses the default,
                and a default of None waits forever

        Raises:
            LockTimeoutError: If any lock is not acquired before the deadline.
                Locks already taken are released first.
        """
        if timeout is None:
            timeout = self.default_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        acquired: List[threading.RLock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if deadline is None:
                    lock.acquire()
                elif not lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
                    raise LockTimeoutError(
                        f"Timed out after {timeout}s waiting for {key[0]} {key[1]}"
                    )
                acquired.append(lock)
        except BaseException:
            for lock in reversed(acquired):
                lock.release()
            raise

        try:
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
