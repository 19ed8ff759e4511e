"""
Tests for the admission gate.
"""

import threading
import time

import pytest

from ..concurrency import ConcurrencyGate
from ..errors import AuditCancelled, Overloaded


class TestConcurrencyGate:

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError, match="max_concurrent"):
            ConcurrencyGate(0)
        with pytest.raises(ValueError, match="max_waiting"):
            ConcurrencyGate(1, -1)

    def test_limits_concurrent_holders(self):
        gate = ConcurrencyGate(2, max_waiting=10)
        active = 0
        peak = 0
        lock = threading.Lock()

        def worker():
            nonlocal active, peak
            with gate:
                with lock:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.05)
                with lock:
                    active -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert peak == 2
        assert gate.admitted == 0

    def test_overflow_is_rejected(self):
        gate = ConcurrencyGate(1, max_waiting=0)
        gate.acquire()
        try:
            with pytest.raises(Overloaded):
                gate.acquire()
        finally:
            gate.release()
        # Slot is free again
        with gate:
            assert gate.admitted == 1

    def test_waiter_is_admitted_when_slot_frees(self):
        gate = ConcurrencyGate(1, max_waiting=1)
        gate.acquire()
        entered = threading.Event()

        def waiter():
            with gate.slot():
                entered.set()

        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.2)
        assert not entered.is_set()
        assert gate.admitted == 2

        gate.release()
        t.join(timeout=5)
        assert entered.is_set()
        assert gate.admitted == 0

    def test_cancel_while_waiting(self):
        gate = ConcurrencyGate(1, max_waiting=1)
        gate.acquire()
        cancel = threading.Event()
        errors = []

        def waiter():
            try:
                with gate.slot(cancel):
                    pass
            except AuditCancelled as e:
                errors.append(e)

        t = threading.Thread(target=waiter)
        t.start()
        cancel.set()
        t.join(timeout=5)
        gate.release()

        assert len(errors) == 1
        assert gate.admitted == 0
