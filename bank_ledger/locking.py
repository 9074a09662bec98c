"""
Account Locking Module

Per-account mutual exclusion for balance mutations. Locks for several
accounts are always taken in sorted identifier order so that two transfers
moving funds in opposite directions cannot deadlock.
"""

from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple
import threading
import time

from .errors import AccountBusy


class AccountLockManager:
    """
    Hands out one lock per account identifier
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def acquire(self, account_ids: Iterable[str]) -> Iterator[Tuple[str, ...]]:
        """
        Hold the locks of all given accounts for the duration of the block

        Args:
            account_ids: Accounts touched by one ledger operation

        Yields:
            The de-duplicated ids in acquisition order

        Raises:
            AccountBusy: If any lock is not obtained within the timeout;
                locks already taken are released first
        """
        ordered = tuple(sorted(set(account_ids)))
        deadline = time.monotonic() + self.timeout
        held: List[threading.Lock] = []

        try:
            for account_id in ordered:
                lock = self._lock_for(account_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    raise AccountBusy(
                        f"Timed out after {self.timeout}s waiting for account {account_id}"
                    )
                held.append(lock)
            yield ordered
        finally:
            for lock in reversed(held):
                lock.release()

    def is_locked(self, account_id: str) -> bool:
        """Check whether an account is currently held by some operation"""
        with self._registry_lock:
            lock = self._locks.get(account_id)
        return lock is not None and lock.locked()
