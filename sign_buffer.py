"""Sign buffering and temporal smoothing.

Per-frame classifications go through three stages:

- StabilityFilter decides whether a detection becomes a token.
- SignBuffer accumulates tokens and flushes them after a quiet period
  (debounce).
- SignTranslationSession wires both to a TranslationDispatcher and delivers
  one TranslationResult per flush, in flush order.

Each session owns its own state, so several sessions can run side by side.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from scheduling import Scheduler, ThreadingScheduler, TimerHandle
from sign_config import PipelineConfig
from translation_service import TranslationDispatcher, TranslationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionEvent:
    label: str
    confidence: float
    timestamp_ms: float


@dataclass(frozen=True)
class FlushSnapshot:
    generation: int
    signs: Tuple[str, ...]
    epoch: int


class StabilityFilter:
    """Suppresses re-triggering of the same sign.

    A detection is rejected when it repeats the most recently accepted label
    within the reject window, or when it equals the last token still in the
    buffer (no matter how much time has passed).
    """

    def __init__(self, reject_window_ms: float):
        self.reject_window_ms = float(reject_window_ms)
        self._last_accept_ms: Dict[str, float] = {}
        self._last_label: Optional[str] = None

    @property
    def last_label(self) -> Optional[str]:
        return self._last_label

    def last_accept_time(self, label: str) -> Optional[float]:
        return self._last_accept_ms.get(label)

    def should_accept(self, event: DetectionEvent, last_buffered: Optional[str]) -> bool:
        if event.label == self._last_label:
            last = self._last_accept_ms.get(event.label)
            if last is not None and event.timestamp_ms - last < self.reject_window_ms:
                return False
        if last_buffered is not None and event.label == last_buffered:
            return False
        return True

    def record(self, event: DetectionEvent) -> None:
        self._last_accept_ms[event.label] = event.timestamp_ms
        self._last_label = event.label

    def reset(self) -> None:
        self._last_accept_ms.clear()
        self._last_label = None


class SignBuffer:
    """Ordered token buffer with a restartable single-shot flush timer.

    Not thread-safe on its own; SignTranslationSession serializes access.
    """

    def __init__(
        self,
        flush_delay_ms: float,
        scheduler: Scheduler,
        on_flush: Callable[[int, Tuple[str, ...]], Optional[Callable[[], None]]],
        lock: Optional[threading.RLock] = None,
    ):
        self.flush_delay_ms = float(flush_delay_ms)
        self._scheduler = scheduler
        self._on_flush = on_flush
        self._lock = lock if lock is not None else threading.RLock()
        self._tokens: List[str] = []
        self._timer: Optional[TimerHandle] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of flushes so far."""
        return self._generation

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and self._timer.pending

    @property
    def flush_due_ms(self) -> Optional[float]:
        return self._timer.due_ms if self.timer_pending else None

    def last(self) -> Optional[str]:
        return self._tokens[-1] if self._tokens else None

    def tokens(self) -> List[str]:
        return list(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def append(self, token: str) -> None:
        with self._lock:
            self._tokens.append(token)
            self._restart_timer()

    def clear(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._tokens = []

    def cancel(self) -> None:
        with self._lock:
            self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _restart_timer(self) -> None:
        # Caller holds self._lock. A timer thread that fires before call_later
        # returns blocks in _fire until the holder below is filled in.
        self._cancel_timer()
        holder: Dict[str, TimerHandle] = {}

        def fire() -> None:
            self._fire(holder)

        holder["handle"] = self._timer = self._scheduler.call_later(self.flush_delay_ms, fire)

    def _fire(self, holder: Dict[str, TimerHandle]) -> None:
        with self._lock:
            handle = holder.get("handle")
            # A handle that was replaced or cleared may still fire on its own thread.
            if handle is None or handle is not self._timer:
                return
            self._timer = None
            if not self._tokens:
                return
            snapshot = tuple(self._tokens)
            self._tokens = []
            self._generation += 1
            followup = self._on_flush(self._generation, snapshot)
        # on_flush runs under the lock; whatever it hands back runs after release.
        if followup is not None:
            followup()


ResultCallback = Callable[[TranslationResult], None]


class SignTranslationSession:
    """One translation session: filter -> buffer -> debounce -> dispatch -> callback.

    Results reach ``on_result`` in flush order. A context-aware result whose
    flush happened before the latest clear() is discarded instead of
    delivered.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        dispatcher: Optional[TranslationDispatcher] = None,
        on_result: Optional[ResultCallback] = None,
        scheduler: Optional[Scheduler] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        session_id: str = "default",
    ):
        self.config = config or PipelineConfig()
        self.session_id = session_id
        self.dispatcher = dispatcher or TranslationDispatcher()
        self.scheduler = scheduler or ThreadingScheduler()
        self._on_result = on_result
        self.context_aware = self.config.use_context_aware_translation

        self._lock = threading.RLock()
        self._filter = StabilityFilter(self.config.reject_window_ms)
        self._buffer = SignBuffer(self.config.flush_delay_ms, self.scheduler, self._handle_flush, lock=self._lock)

        self._epoch = 0
        self._closed = False
        self._executor = executor
        self._owns_executor = executor is None
        self._in_flight = 0
        self._idle = threading.Condition(self._lock)

        self._delivery_lock = threading.Lock()
        self._next_delivery = 1
        self._completed: Dict[int, Optional[TranslationResult]] = {}

    # -- input side -------------------------------------------------------

    def on_detection(
        self,
        label: Optional[str],
        confidence: float,
        timestamp_ms: Optional[float] = None,
    ) -> List[str]:
        """Feed one per-frame classification. Returns the live buffer."""
        return self.submit(label, confidence, timestamp_ms)[0]

    def submit(
        self,
        label: Optional[str],
        confidence: float,
        timestamp_ms: Optional[float] = None,
    ) -> Tuple[List[str], bool]:
        """Like on_detection, but also reports whether the sign was accepted."""
        with self._lock:
            if self._closed or not label or confidence < self.config.min_confidence_threshold:
                return self._buffer.tokens(), False

            ts = self.scheduler.now_ms() if timestamp_ms is None else float(timestamp_ms)
            event = DetectionEvent(label=label, confidence=float(confidence), timestamp_ms=ts)
            if not self._filter.should_accept(event, self._buffer.last()):
                logger.debug("[%s] rejected %s @ %.0fms", self.session_id, label, ts)
                return self._buffer.tokens(), False

            self._buffer.append(label)
            self._filter.record(event)
            logger.debug("[%s] accepted %s @ %.0fms -> %s", self.session_id, label, ts, self._buffer.tokens())
            return self._buffer.tokens(), True

    def clear(self) -> None:
        """Drop the live buffer and pending flush. Nothing is dispatched."""
        with self._lock:
            self._buffer.clear()
            self._filter.reset()
            self._epoch += 1
        logger.info("🧹 [%s] sign buffer cleared", self.session_id)

    def set_context_aware(self, enabled: bool) -> None:
        with self._lock:
            self.context_aware = bool(enabled)

    # -- state ------------------------------------------------------------

    def current_signs(self) -> List[str]:
        with self._lock:
            return self._buffer.tokens()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._buffer.generation

    @property
    def flush_due_ms(self) -> Optional[float]:
        with self._lock:
            return self._buffer.flush_due_ms

    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    # -- flush and delivery ----------------------------------------------

    def _handle_flush(self, generation: int, signs: Tuple[str, ...]) -> Callable[[], None]:
        # Runs with self._lock held (from SignBuffer._fire); the returned
        # callable runs after the lock is released.
        snapshot = FlushSnapshot(generation=generation, signs=signs, epoch=self._epoch)
        context_aware = self.context_aware
        logger.info("📤 [%s] flush #%d: %s", self.session_id, generation, " ".join(signs))
        return lambda: self._dispatch(snapshot, context_aware)

    def _dispatch(self, snapshot: FlushSnapshot, context_aware: bool) -> None:
        if not context_aware:
            self._complete(snapshot, self.dispatcher.direct(snapshot.signs, snapshot.generation))
            return

        with self._idle:
            self._in_flight += 1
        try:
            future = self._get_executor().submit(self.dispatcher.context_aware, snapshot.signs, snapshot.generation)
        except RuntimeError as e:
            # Session closed or executor already shut down.
            logger.warning("⚠️ [%s] translation #%d not dispatched: %s", self.session_id, snapshot.generation, e)
            self._complete(snapshot, None)
            self._finish_one()
            return

        future.add_done_callback(lambda f: self._on_translation_done(snapshot, f))

    def _on_translation_done(self, snapshot: FlushSnapshot, future: Future) -> None:
        try:
            result = future.result()
        except Exception as e:
            # Dispatcher never raises; this only covers executor shutdown.
            logger.error("❌ [%s] translation #%d did not complete: %s", self.session_id, snapshot.generation, e)
            result = None
        try:
            self._complete(snapshot, result)
        finally:
            self._finish_one()

    def _finish_one(self) -> None:
        with self._idle:
            self._in_flight -= 1
            self._idle.notify_all()

    def _complete(self, snapshot: FlushSnapshot, result: Optional[TranslationResult]) -> None:
        with self._lock:
            stale = snapshot.epoch != self._epoch
        if stale and result is not None:
            logger.info(
                "🗑️ [%s] discarding translation #%d: session was cleared after the flush",
                self.session_id,
                snapshot.generation,
            )
            result = None

        with self._delivery_lock:
            self._completed[snapshot.generation] = result
            while self._next_delivery in self._completed:
                ready = self._completed.pop(self._next_delivery)
                self._next_delivery += 1
                if ready is not None:
                    self._deliver(ready)

    def _deliver(self, result: TranslationResult) -> None:
        logger.info(
            "✅ [%s] translation #%d (%s): %s",
            self.session_id,
            result.generation,
            result.method.value,
            result.translation,
        )
        if self._on_result is None:
            return
        try:
            self._on_result(result)
        except Exception:
            logger.exception("⚠️ [%s] result callback failed", self.session_id)

    # -- lifecycle --------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"session {self.session_id} is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=2, thread_name_prefix=f"sign-translate-{self.session_id}"
                )
            return self._executor

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every dispatched translation has been delivered or discarded."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def close(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            self._closed = True
            self._buffer.cancel()
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=wait_for_pending)
