"""
Account Lock Manager Module

Linearizes read-modify-write cycles on accounts. Keys are always acquired in
ascending order, so a transfer A->B and a transfer B->A can never deadlock.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List

from .errors import StorageTimeout
from .logging_config import get_logger


class LockManager(ABC):
    """Atomicity abstraction injected into the ledger engine"""

    @abstractmethod
    @contextmanager
    def acquire(self, keys: Iterable[str]) -> Iterator[List[str]]:
        """Hold exclusive locks on every key for the duration of the block"""
        pass


class AccountLockManager(LockManager):
    """
    In-process per-key reentrant locks.

    Reentrancy lets the engine hold an account lock while lower layers
    (account store, journal) take the same key again on the same thread.
    A key's lock is dropped from the registry once no thread holds or waits
    on it, so one-off keys such as account-number candidates do not pile up.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("bank_ledger.locking")

    @property
    def registered_keys(self) -> List[str]:
        """Keys that currently have a lock held or awaited"""
        with self._registry_lock:
            return sorted(self._locks)

    def _check_out(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _check_in(self, key: str) -> None:
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def acquire(self, keys: Iterable[str]) -> Iterator[List[str]]:
        ordered = sorted(set(keys))
        checked_out: List[str] = []
        held: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._check_out(key)
                checked_out.append(key)
                if not lock.acquire(timeout=self.timeout):
                    self.logger.warning(f"Lock wait on {key} exceeded {self.timeout}s")
                    raise StorageTimeout(f"Could not lock {key} within {self.timeout}s")
                held.append(lock)
            yield ordered
        finally:
            for lock in reversed(held):
                lock.release()
            for key in reversed(checked_out):
                self._check_in(key)
