import logging
import threading
from typing import Optional

from .errors import AuditCancelled, Overloaded

logger = logging.getLogger(__name__)

# How often a waiting request re-checks its cancel event.
_WAIT_POLL_SECONDS = 0.1


class ConcurrencyGate:
    """
    A thread-safe context manager that limits how many audits run at once
    and how many may wait for a slot.
    """

    def __init__(self, max_concurrent: int, max_waiting: int = 0):
        """
        Initializes the gate.

        Args:
            max_concurrent: The maximum number of threads allowed to be
                            "inside" the gate at any one time.
            max_waiting: How many further threads may block waiting for a
                         slot. Anything beyond that is rejected immediately.
        """
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be greater than 0")
        if max_waiting < 0:
            raise ValueError("max_waiting must not be negative")
        # BoundedSemaphore catches release() being called more than acquire().
        self.semaphore = threading.BoundedSemaphore(max_concurrent)
        self.max_concurrent = max_concurrent
        self.max_waiting = max_waiting
        self._admitted = 0
        self._lock = threading.Lock()

    @property
    def admitted(self) -> int:
        """Number of threads currently running or waiting inside the gate."""
        with self._lock:
            return self._admitted

    def acquire(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Take a slot, blocking while all slots are busy.

        Raises:
            Overloaded: If the wait queue is already full.
            AuditCancelled: If `cancel` is set while waiting.
        """
        with self._lock:
            if self._admitted >= self.max_concurrent + self.max_waiting:
                logger.warning(
                    f"Rejecting audit: {self._admitted} admitted "
                    f"(max {self.max_concurrent} running, {self.max_waiting} waiting)"
                )
                raise Overloaded("too many audits in flight, try again later")
            self._admitted += 1

        try:
            while not self.semaphore.acquire(timeout=_WAIT_POLL_SECONDS):
                if cancel is not None and cancel.is_set():
                    raise AuditCancelled("request cancelled while waiting for a worker")
        except BaseException:
            with self._lock:
                self._admitted -= 1
            raise

    def release(self) -> None:
        self.semaphore.release()
        with self._lock:
            self._admitted -= 1

    def slot(self, cancel: Optional[threading.Event] = None) -> "_Slot":
        """Context manager form of acquire()/release() that honours `cancel`."""
        return _Slot(self, cancel)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class _Slot:
    def __init__(self, gate: ConcurrencyGate, cancel: Optional[threading.Event]):
        self.gate = gate
        self.cancel = cancel

    def __enter__(self):
        self.gate.acquire(self.cancel)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.gate.release()
