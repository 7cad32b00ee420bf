"""Bounded concurrency gate for container builds."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = ["ExecutionPool"]


class ExecutionPool:
    """Counting gate with a fixed capacity.

    The default capacity of 1 matches a single local Docker daemon. Only
    builds go through the pool; deploys are not gated.
    """

    def __init__(self, capacity: int = 1, *, label: str = "docker") -> None:
        if capacity < 1:
            raise ValueError(f"pool capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.label = label
        self._slots = threading.Semaphore(capacity)
        self._lock = threading.Lock()
        self._in_use = 0
        self._peak = 0

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def peak(self) -> int:
        """Highest number of slots ever held at once."""
        with self._lock:
            return self._peak

    def acquire(self, timeout: float | None = None) -> bool:
        """Block until a slot is free. Returns False only on timeout."""
        if not self._slots.acquire(timeout=timeout):
            return False
        with self._lock:
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)
        return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError(f"{self.label} pool released more often than acquired")
            self._in_use -= 1
        self._slots.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one slot for the duration of the block, on every exit path."""
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def __repr__(self) -> str:
        return f"ExecutionPool({self.label!r}, {self.in_use}/{self.capacity})"
