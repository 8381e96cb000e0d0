"""
Per-Loan Locking Module

Mutations of a loan (payments, overdue sweeps) are serialised per
(tenant, loan) pair. Different loans never contend; there is no global lock
held across a mutation.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from .exceptions import LockTimeout, OperationCancelled


class CancellationToken:
    """Cooperative cancellation flag checked by long-running operations"""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "operation cancelled")


class LoanLockRegistry:
    """
    Registry of one lock per (tenant_id, loan_id).

    An entry lives only while some caller holds or waits on it, so the
    registry stays as small as the set of loans currently being mutated.
    Acquisition waits at most ``timeout`` seconds and raises LockTimeout
    instead of blocking forever.
    """

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[Tuple[str, str], List] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: Tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Tuple[str, str]) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, tenant_id: str, loan_id: str, timeout: Optional[float] = None):
        """Hold the loan's lock for the duration of the block"""
        wait = self.default_timeout if timeout is None else timeout
        key = (tenant_id, loan_id)
        lock = self._checkout(key)
        if not lock.acquire(timeout=wait):
            self._checkin(key)
            raise LockTimeout(
                f"Timed out after {wait}s waiting for loan {loan_id}",
                {"tenant_id": tenant_id, "loan_id": loan_id}
            )
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)

    def is_locked(self, tenant_id: str, loan_id: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get((tenant_id, loan_id))
            return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
