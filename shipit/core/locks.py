"""Per-key mutual exclusion whose bookkeeping does not outlive its users.

A key's lock exists only while some thread holds it or waits for it, so a
daemon that locks every commit it ever sees keeps a map no larger than the
set of commits currently being worked on.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

__all__ = ["KeyedLock"]


@dataclass(slots=True)
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLock[K: Hashable]:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[K, _Entry] = {}

    @contextmanager
    def hold(self, key: K) -> Iterator[None]:
        """Hold ``key`` exclusively for the duration of the block."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def run_if_idle(self, key: K, fn: Callable[[], None]) -> bool:
        """Run ``fn`` unless ``key`` is held or awaited; nobody can take it meanwhile."""
        with self._guard:
            if key in self._entries:
                return False
            fn()
            return True

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
