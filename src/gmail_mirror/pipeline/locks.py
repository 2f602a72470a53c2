"""In-process per-account mutual exclusion."""

from __future__ import annotations

import threading


class AccountLocks:
    """One non-reentrant lock per account, created on first use.

    ``try_acquire`` never blocks, so "check and claim" is a single step.
    The lock may be released from a different thread than the one that
    acquired it (the sync worker releases what ``start`` acquired).
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def try_acquire(self, account_id: str) -> bool:
        return self._lock_for(account_id).acquire(blocking=False)

    def release(self, account_id: str) -> None:
        self._lock_for(account_id).release()

    def is_held(self, account_id: str) -> bool:
        return self._lock_for(account_id).locked()
