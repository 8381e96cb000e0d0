"""
Tests for per-loan locking and cancellation
"""

import threading
import time

import pytest

from loan_servicing.exceptions import LockTimeout, OperationCancelled
from loan_servicing.locks import CancellationToken, LoanLockRegistry


class TestLoanLockRegistry:

    def setup_method(self):
        self.locks = LoanLockRegistry(default_timeout=0.05)

    def test_hold_and_release(self):
        with self.locks.hold("acme", "L1"):
            assert self.locks.is_locked("acme", "L1")
        assert not self.locks.is_locked("acme", "L1")

    def test_timeout_when_held_elsewhere(self):
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("acme", "L1"):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(timeout=5)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                with self.locks.hold("acme", "L1", timeout=0.01):
                    pass
            assert exc_info.value.details == {"tenant_id": "acme", "loan_id": "L1"}
        finally:
            release.set()
            thread.join(timeout=5)

    def test_different_loans_and_tenants_do_not_contend(self):
        with self.locks.hold("acme", "L1"):
            with self.locks.hold("acme", "L2"):
                with self.locks.hold("globex", "L1"):
                    assert len(self.locks) == 3

    def test_entries_dropped_once_released(self):
        for index in range(100):
            with self.locks.hold("acme", f"L{index}"):
                pass
        assert len(self.locks) == 0
        assert not self.locks.is_locked("acme", "L1")

    def test_entry_kept_while_waiter_times_out(self):
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("acme", "L1"):
                acquired.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(timeout=5)
        try:
            with pytest.raises(LockTimeout):
                with self.locks.hold("acme", "L1", timeout=0.01):
                    pass
            assert len(self.locks) == 1
            assert self.locks.is_locked("acme", "L1")
        finally:
            release.set()
            thread.join(timeout=5)
        assert len(self.locks) == 0

    def test_released_after_exception(self):
        with pytest.raises(RuntimeError):
            with self.locks.hold("acme", "L1"):
                raise RuntimeError("fail")
        assert not self.locks.is_locked("acme", "L1")

    def test_serialises_critical_section(self):
        counter = {"value": 0}

        def bump():
            for _ in range(50):
                with self.locks.hold("acme", "L1", timeout=5):
                    current = counter["value"]
                    time.sleep(0)
                    counter["value"] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        assert counter["value"] == 200


class TestCancellationToken:

    def test_not_cancelled_by_default(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel(self):
        token = CancellationToken()
        token.cancel("client disconnected")
        assert token.cancelled
        with pytest.raises(OperationCancelled, match="client disconnected"):
            token.raise_if_cancelled()
