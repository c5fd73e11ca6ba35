"""Admission policy: how many execution units may run at once."""

from __future__ import annotations

import threading
from typing import Protocol


class AdmissionPolicy(Protocol):
    """Capacity token source consulted before every dequeue."""

    capacity: int

    def try_acquire(self) -> bool:
        """Take one slot if available without blocking."""
        raise NotImplementedError

    def release(self) -> None:
        """Return a slot taken by ``try_acquire``."""
        raise NotImplementedError

    @property
    def in_use(self) -> int:
        raise NotImplementedError


class CapacityAdmission:
    """Bounded-semaphore admission; capacity 1 gives strictly sequential dispatch."""

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("Admission capacity must be >= 1.")
        self.capacity = capacity
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._in_use = 0

    def try_acquire(self) -> bool:
        if not self._semaphore.acquire(blocking=False):
            return False
        with self._lock:
            self._in_use += 1
        return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("Admission slot released more times than acquired.")
            self._in_use -= 1
        self._semaphore.release()

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use
