"""Single-flight, generational result cache.

``ResultCache.resolve(key, compute)`` returns the ``ResultStream`` for
``key``:

- no entry for the key's slot: a new generation starts in ``Pending`` and
  ``compute`` is scheduled exactly once;
- an entry with the same key (pending or terminal): that stream is returned
  and nothing is recomputed;
- an entry with a different digest: the old generation is superseded. It
  keeps running and keeps its final value for whoever already holds it; the
  new generation gets a fresh ``Pending`` and its own computation.

Locking is per slot. The only cache-wide lock guards creation and removal of
slot entries, so resolving one key never waits for another key's bookkeeping.

Each action kind runs on its own thread pool: a deploy never queues behind
builds that are waiting for an execution pool slot.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Collection
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shipit.pipeline.model import (
    ActionKey,
    ActionKind,
    ExecutionResult,
    Failure,
    Pending,
    is_terminal,
)

__all__ = ["Compute", "Listener", "ResultCache", "ResultStream", "make_job_id"]

Compute = Callable[[], ExecutionResult]
Listener = Callable[["ResultStream", ExecutionResult], None]
Spawn = Callable[[Callable[[], None]], object]

_ACTION_THREADS: dict[ActionKind, int] = {"build": 32, "deploy": 4}


def make_job_id(key: ActionKey, now: datetime) -> str:
    """Job identifier, e.g. ``2026-10-18/142501-build-1a2b3c4d``."""
    return f"{now:%Y-%m-%d/%H%M%S}-{key.kind}-{key.short}"


class ResultStream:
    """One generation of one action key.

    State only moves ``Pending -> Success | Failure``; once terminal it never
    changes. Listeners get the current state on subscription, then every
    later transition, in order.
    """

    def __init__(self, key: ActionKey, generation: int, job_id: str) -> None:
        self.key = key
        self.generation = generation
        self.job_id = job_id
        self.finished_at: float | None = None
        self._state: ExecutionResult = Pending(progress_id=job_id)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        # Serialises deliveries so that a replay on subscribe can never be
        # observed after the terminal transition it precedes.
        self._delivery = threading.RLock()
        self._done = threading.Event()

    @property
    def state(self) -> ExecutionResult:
        with self._lock:
            return self._state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and replay the current state to it.

        Returns:
            A callable that removes the listener.
        """
        with self._delivery:
            with self._lock:
                self._listeners.append(listener)
                state = self._state
            listener(self, state)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def wait(self, timeout: float | None = None) -> ExecutionResult:
        """Block until the generation is terminal (or ``timeout`` elapses)."""
        self._done.wait(timeout)
        return self.state

    def _finish(self, result: ExecutionResult, finished_at: float) -> bool:
        if not is_terminal(result):
            raise ValueError(f"{self.key}: computation returned a non-terminal state")
        with self._delivery:
            with self._lock:
                if is_terminal(self._state):
                    return False
                self._state = result
                self.finished_at = finished_at
                listeners = list(self._listeners)
            self._done.set()
            for listener in listeners:
                listener(self, result)
        return True

    def __repr__(self) -> str:
        return f"ResultStream({self.key}, generation={self.generation}, state={self.state!r})"


@dataclass(slots=True)
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    stream: ResultStream | None = None
    generation: int = 0
    invalidated: bool = False
    evicted: bool = False


class ResultCache:
    """Maps action slots to their latest generation.

    Args:
        spawn: Runs a computation in the background. Defaults to one thread
            pool per action kind; tests pass a synchronous callable.
        clock: Monotonic clock used for eviction.
        now: Wall clock used for job identifiers.
    """

    def __init__(
        self,
        *,
        spawn: Spawn | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._spawn = spawn
        self._executors: dict[ActionKind, ThreadPoolExecutor] = {}
        self._clock = clock
        self._now = now
        self._slots: dict[tuple[ActionKind, str], _Slot] = {}
        self._guard = threading.Lock()

    def resolve(self, key: ActionKey, compute: Compute) -> ResultStream:
        """Return the stream for ``key``, starting ``compute`` only if needed."""
        while True:
            slot = self._slot_for(key.slot)
            with slot.lock:
                if slot.evicted:
                    continue
                current = slot.stream
                if current is not None and current.key == key and not slot.invalidated:
                    return current
                slot.generation += 1
                stream = ResultStream(key, slot.generation, make_job_id(key, self._now()))
                slot.stream = stream
                slot.invalidated = False
                break

        self._spawn_for(key.kind)(lambda: self._execute(stream, compute))
        return stream

    def current(self, kind: ActionKind, target: str) -> ResultStream | None:
        """Latest generation for a slot, if any."""
        with self._guard:
            slot = self._slots.get((kind, target))
        if slot is None:
            return None
        with slot.lock:
            return slot.stream

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    def invalidate(self, kind: ActionKind, target: str) -> bool:
        """Force the next ``resolve`` of this slot to start a new generation.

        Has no effect on an in-flight generation, which would otherwise run
        twice concurrently.
        """
        with self._guard:
            slot = self._slots.get((kind, target))
        if slot is None:
            return False
        with slot.lock:
            if slot.stream is None or not slot.stream.done:
                return False
            slot.invalidated = True
            return True

    def prune(self, ttl_seconds: float) -> list[tuple[ActionKind, str]]:
        """Evict build generations that finished more than ``ttl_seconds`` ago.

        An evicted slot is dropped entirely; the next ``resolve`` for it
        starts over at generation 1. In-flight generations are never evicted.
        Deploy slots are never evicted either: they are bounded by the
        configured slots, and evicting one would redeploy an unchanged target.
        Returns the evicted slots.
        """
        now = self._clock()
        return self._evict(
            lambda name, stream: name[0] == "build"
            and stream.finished_at is not None
            and now - stream.finished_at >= ttl_seconds
        )

    def retain(self, kind: ActionKind, targets: Collection[str]) -> list[tuple[ActionKind, str]]:
        """Drop finished ``kind`` slots whose target is not in ``targets``.

        Slots still computing are kept and dropped by a later call.
        """
        return self._evict(
            lambda name, stream: name[0] == kind and name[1] not in targets and stream.done
        )

    def shutdown(self, *, wait: bool = True) -> None:
        with self._guard:
            executors = list(self._executors.values())
        for executor in executors:
            executor.shutdown(wait=wait)

    def _evict(
        self, predicate: Callable[[tuple[ActionKind, str], ResultStream], bool]
    ) -> list[tuple[ActionKind, str]]:
        evicted: list[tuple[ActionKind, str]] = []
        with self._guard:
            for name, slot in list(self._slots.items()):
                with slot.lock:
                    stream = slot.stream
                    if stream is not None and not predicate(name, stream):
                        continue
                    # A resolve that already holds this slot retries on a fresh one.
                    slot.evicted = True
                    slot.stream = None
                del self._slots[name]
                if stream is not None:
                    evicted.append(name)
        return evicted

    def _slot_for(self, name: tuple[ActionKind, str]) -> _Slot:
        with self._guard:
            slot = self._slots.get(name)
            if slot is None:
                slot = _Slot()
                self._slots[name] = slot
            return slot

    def _spawn_for(self, kind: ActionKind) -> Spawn:
        if self._spawn is not None:
            return self._spawn
        with self._guard:
            executor = self._executors.get(kind)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=_ACTION_THREADS[kind], thread_name_prefix=f"shipit-{kind}"
                )
                self._executors[kind] = executor
            return executor.submit

    def _execute(self, stream: ResultStream, compute: Compute) -> None:
        try:
            result = compute()
        except Exception as e:  # noqa: BLE001 - surfaced as the generation's Failure
            result = Failure(message=f"{stream.key.kind} crashed: {e!r}")
        if not is_terminal(result):
            result = Failure(message=f"{stream.key.kind} returned no terminal state")
        stream._finish(result, self._clock())  # pyright: ignore[reportPrivateUsage]
