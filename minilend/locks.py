"""
Lock Manager Module

Named, re-entrant locks with bounded acquisition. Accounts, pools and credit
profiles each get their own lock; callers take them in that order.
"""

import threading
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from .errors import LockTimeout

logger = logging.getLogger("minilend.locks")


def account_lock_key(account_id: str) -> str:
    return f"account:{account_id}"


def pool_lock_key(pool_id: str) -> str:
    return f"pool:{pool_id}"


def credit_lock_key(wallet_address: str) -> str:
    return f"credit:{wallet_address}"


class LockManager:
    """Hands out one re-entrant lock per key and acquires them with a timeout"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str, timeout: Optional[float] = None):
        """
        Hold every named lock for the duration of the block

        Args:
            keys: Lock names, acquired in the given order
            timeout: Seconds to wait per lock (defaults to the manager timeout)

        Raises:
            LockTimeout: If any lock is not acquired in time; locks already
                taken by this call are released first
        """
        wait = self.timeout_seconds if timeout is None else timeout
        acquired: List[threading.RLock] = []
        try:
            for key in keys:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=wait):
                    logger.warning(f"Timed out after {wait}s waiting for lock {key}")
                    raise LockTimeout(f"Could not acquire {key} within {wait} seconds")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
