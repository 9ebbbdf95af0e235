"""Timer sources for the debounce logic.

Both schedulers work in milliseconds and hand back a TimerHandle that can be
cancelled any number of times. ThreadingScheduler runs callbacks on a
threading.Timer; ManualScheduler keeps a virtual clock that only moves when
advance() is called, which is what replay and the tests use.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from typing import Callable, List, Optional, Tuple


class TimerHandle:
    """Cancellation token for one scheduled callback."""

    def __init__(self, due_ms: float, callback: Callable[[], None]):
        self.due_ms = due_ms
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self._timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def _run(self) -> None:
        if self._cancelled or self._fired:
            return
        self._fired = True
        self._callback()


class Scheduler:
    """Interface: a clock plus single-shot delayed callbacks."""

    def now_ms(self) -> float:
        raise NotImplementedError

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class ThreadingScheduler(Scheduler):
    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now_ms() + delay_ms, callback)
        timer = threading.Timer(max(delay_ms, 0.0) / 1000.0, handle._run)
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle


class ManualScheduler(Scheduler):
    """Virtual clock. Callbacks run inside advance()/advance_to(), in due order."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay_ms, 0.0), callback)
        heapq.heappush(self._queue, (handle.due_ms, next(self._seq), handle))
        return handle

    def pending_count(self) -> int:
        return sum(1 for _, _, h in self._queue if h.pending)

    def advance(self, delta_ms: float) -> int:
        return self.advance_to(self._now + delta_ms)

    def advance_to(self, target_ms: float) -> int:
        """Move the clock to target_ms, firing every due timer. Returns how many fired."""
        if target_ms < self._now:
            raise ValueError(f"Cannot move the clock backwards ({target_ms} < {self._now})")

        fired = 0
        while self._queue and self._queue[0][0] <= target_ms:
            due, _, handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue
            self._now = max(self._now, due)
            handle._run()
            fired += 1
        self._now = target_ms
        return fired
