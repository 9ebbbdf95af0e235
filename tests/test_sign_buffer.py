import threading
import time

import pytest

from conftest import FakeBackend, GatedBackend
from scheduling import ManualScheduler, TimerHandle
from sign_buffer import DetectionEvent, SignBuffer, SignTranslationSession, StabilityFilter
from sign_config import PipelineConfig
from translation_service import TranslationDispatcher, TranslationMethod


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestStabilityFilter:
    def test_same_label_inside_window_rejected(self):
        f = StabilityFilter(3000)
        first = DetectionEvent("ONE", 0.9, 0)
        assert f.should_accept(first, None)
        f.record(first)
        assert not f.should_accept(DetectionEvent("ONE", 0.9, 2999), None)
        assert f.should_accept(DetectionEvent("ONE", 0.9, 3000), None)

    def test_consecutive_duplicate_rejected_after_window(self):
        f = StabilityFilter(3000)
        f.record(DetectionEvent("ONE", 0.9, 0))
        assert not f.should_accept(DetectionEvent("ONE", 0.9, 60000), "ONE")

    def test_window_only_applies_to_most_recent_label(self):
        f = StabilityFilter(3000)
        f.record(DetectionEvent("ONE", 0.9, 0))
        f.record(DetectionEvent("TWO", 0.9, 100))
        assert f.should_accept(DetectionEvent("ONE", 0.9, 200), "TWO")
        assert f.last_label == "TWO"
        assert f.last_accept_time("ONE") == 0

    def test_reset_forgets_accept_records(self):
        f = StabilityFilter(3000)
        f.record(DetectionEvent("ONE", 0.9, 0))
        f.reset()
        assert f.last_label is None
        assert f.should_accept(DetectionEvent("ONE", 0.9, 10), None)


class TestSignBuffer:
    def test_append_restarts_single_timer(self, scheduler):
        flushed = []
        buf = SignBuffer(1000, scheduler, lambda g, s: flushed.append((g, s)))
        buf.append("ONE")
        scheduler.advance(600)
        buf.append("TWO")
        assert scheduler.pending_count() == 1
        assert buf.flush_due_ms == 1600

        scheduler.advance(999)
        assert flushed == []
        scheduler.advance(1)
        assert flushed == [(1, ("ONE", "TWO"))]
        assert buf.tokens() == []
        assert not buf.timer_pending

    def test_clear_cancels_timer(self, scheduler):
        flushed = []
        buf = SignBuffer(1000, scheduler, lambda g, s: flushed.append(s))
        buf.append("ONE")
        buf.clear()
        scheduler.advance(5000)
        assert flushed == []
        assert len(buf) == 0
        assert buf.generation == 0

    def test_stale_handle_is_ignored(self, scheduler):
        flushed = []
        buf = SignBuffer(1000, scheduler, lambda g, s: flushed.append(s))
        buf.append("ONE")
        stale = buf._timer
        buf.append("TWO")
        buf._fire({"handle": stale})
        assert flushed == []
        assert buf.tokens() == ["ONE", "TWO"]

    def test_timer_firing_before_call_later_returns_still_flushes(self):
        class EagerScheduler(ManualScheduler):
            """Starts the callback on another thread before handing back the handle."""

            def call_later(self, delay_ms, callback):
                handle = TimerHandle(self.now_ms() + delay_ms, callback)
                worker = threading.Thread(target=handle._run)
                worker.start()
                worker.join(0.05)
                return handle

        flushed = []
        buf = SignBuffer(1, EagerScheduler(), lambda g, s: flushed.append((g, s)))
        buf.append("ONE")
        assert _wait_until(lambda: flushed == [(1, ("ONE",))])
        assert buf.tokens() == []


class TestSessionScenarios:
    def test_window_rejection_then_flush(self, make_session, feed, scheduler, results):
        session = make_session()
        assert feed(session, "ONE", 0) == (["ONE"], True)
        assert feed(session, "ONE", 500) == (["ONE"], False)
        assert feed(session, "TWO", 600) == (["ONE", "TWO"], True)

        scheduler.advance_to(4599)
        assert results == []
        scheduler.advance_to(4600)

        assert len(results) == 1
        result = results[0]
        assert result.original_signs == ("ONE", "TWO")
        assert result.translation == "ONE TWO"
        assert result.method is TranslationMethod.DIRECT
        assert result.success
        assert result.generation == 1

    def test_rejected_detection_does_not_reset_timer(self, make_session, feed, scheduler, results):
        session = make_session()
        feed(session, "STOP", 0)
        assert session.flush_due_ms == 4000
        assert feed(session, "STOP", 3999) == (["STOP"], False)
        assert session.flush_due_ms == 4000

        scheduler.advance_to(4000)
        assert [r.original_signs for r in results] == [("STOP",)]


class TestSessionProperties:
    def test_no_adjacent_duplicates_even_after_window(self, make_session, feed):
        session = make_session(flush_delay_ms=60000)
        feed(session, "ONE", 0)
        signs, accepted = feed(session, "ONE", 10000)
        assert not accepted
        assert signs == ["ONE"]

    def test_non_adjacent_repeat_is_accepted(self, make_session, feed):
        session = make_session()
        feed(session, "ONE", 0)
        feed(session, "TWO", 100)
        signs, accepted = feed(session, "ONE", 200)
        assert accepted
        assert signs == ["ONE", "TWO", "ONE"]

    def test_window_outlives_flush(self, make_session, feed, scheduler, results):
        session = make_session(reject_window_ms=3000, flush_delay_ms=1000)
        feed(session, "ONE", 0)
        scheduler.advance_to(1000)
        assert len(results) == 1
        assert session.current_signs() == []

        assert feed(session, "ONE", 1500)[1] is False
        assert feed(session, "ONE", 3000)[1] is True

    def test_debounce_yields_single_flush(self, make_session, feed, scheduler, results):
        session = make_session(flush_delay_ms=4000)
        labels = ["ONE", "TWO", "THREE", "FOUR", "FIVE"]
        for i, label in enumerate(labels):
            feed(session, label, i * 2000)

        last = (len(labels) - 1) * 2000
        scheduler.advance_to(last + 3999)
        assert results == []
        scheduler.advance_to(last + 4000)
        assert len(results) == 1
        assert list(results[0].original_signs) == labels

    def test_flush_is_atomic_and_generations_separate(self, make_session, feed, scheduler, results):
        session = make_session()
        feed(session, "HELLO", 0)
        feed(session, "YES", 100)
        scheduler.advance_to(4100)
        assert session.current_signs() == []

        feed(session, "STOP", 5000)
        scheduler.advance_to(9000)
        assert [r.original_signs for r in results] == [("HELLO", "YES"), ("STOP",)]
        assert [r.generation for r in results] == [1, 2]

    def test_clear_is_silent(self, make_session, feed, scheduler, results):
        session = make_session()
        feed(session, "ONE", 0)
        feed(session, "TWO", 100)
        session.clear()
        assert session.current_signs() == []
        scheduler.advance_to(20000)
        assert results == []
        assert session.generation == 0

    def test_clear_resets_accept_records(self, make_session, feed):
        session = make_session()
        feed(session, "ONE", 0)
        session.clear()
        assert feed(session, "ONE", 100) == (["ONE"], True)

    def test_tokens_after_clear_form_their_own_flush(self, make_session, feed, scheduler, results):
        session = make_session()
        feed(session, "ONE", 0)
        session.clear()
        feed(session, "TWO", 200)
        scheduler.advance_to(4200)
        assert [r.original_signs for r in results] == [("TWO",)]

    def test_low_confidence_and_missing_labels_ignored(self, make_session, scheduler):
        session = make_session(min_confidence_threshold=0.85)
        assert session.submit(None, 0.99) == ([], False)
        assert session.submit("", 0.99) == ([], False)
        assert session.submit("ONE", 0.5) == ([], False)
        assert session.flush_due_ms is None
        assert session.submit("ONE", 0.85) == (["ONE"], True)

    def test_returned_signs_are_a_copy(self, make_session, feed):
        session = make_session()
        signs, _ = feed(session, "ONE", 0)
        signs.append("MUTATED")
        assert session.current_signs() == ["ONE"]

    def test_sessions_are_independent(self, scheduler):
        a_results, b_results = [], []
        a = SignTranslationSession(on_result=a_results.append, scheduler=scheduler, session_id="a")
        b = SignTranslationSession(on_result=b_results.append, scheduler=scheduler, session_id="b")
        a.on_detection("ONE", 0.9, 0)
        b.on_detection("ONE", 0.9, 0)
        b.clear()
        scheduler.advance(5000)
        assert [r.original_signs for r in a_results] == [("ONE",)]
        assert b_results == []

    def test_callback_error_does_not_stop_delivery(self, scheduler):
        delivered = []

        def flaky(result):
            delivered.append(result.generation)
            if result.generation == 1:
                raise RuntimeError("display went away")

        session = SignTranslationSession(on_result=flaky, scheduler=scheduler)
        session.on_detection("ONE", 0.9, 0)
        scheduler.advance_to(4000)
        session.on_detection("TWO", 0.9, 5000)
        scheduler.advance_to(9000)
        assert delivered == [1, 2]

    def test_closed_session_ignores_input(self, make_session, scheduler, results):
        session = make_session()
        session.on_detection("ONE", 0.9, 0)
        session.close()
        assert session.on_detection("TWO", 0.9, 10) == ["ONE"]
        scheduler.advance(10000)
        assert results == []


class TestContextAwareDispatch:
    def test_backend_sentence_is_delivered(self, make_session, feed, scheduler, results):
        backend = FakeBackend(reply="I love you.")
        session = make_session(dispatcher=TranslationDispatcher(backend), use_context_aware_translation=True)
        feed(session, "LOVE", 0)
        scheduler.advance_to(4000)
        assert session.drain(5)

        assert len(results) == 1
        assert results[0].method is TranslationMethod.CONTEXT_AWARE
        assert results[0].translation == "I love you."
        assert backend.calls == [("LOVE",)]

    def test_backend_failure_falls_back(self, make_session, feed, scheduler, results):
        backend = FakeBackend(error=ConnectionError("backend unavailable"))
        session = make_session(dispatcher=TranslationDispatcher(backend), use_context_aware_translation=True)
        feed(session, "HELLO", 0)
        feed(session, "YES", 100)
        scheduler.advance_to(4100)
        assert session.drain(5)

        result = results[0]
        assert result.method is TranslationMethod.FALLBACK
        assert not result.success
        assert result.translation == "HELLO YES"
        assert "backend unavailable" in result.error

    def test_mode_can_be_switched_per_session(self, make_session, feed, scheduler, results):
        backend = FakeBackend(reply="Stop.")
        session = make_session(dispatcher=TranslationDispatcher(backend))
        session.set_context_aware(True)
        feed(session, "STOP", 0)
        scheduler.advance_to(4000)
        session.drain(5)
        assert results[0].method is TranslationMethod.CONTEXT_AWARE

    def test_new_generation_accumulates_while_translation_in_flight(self, make_session, feed, scheduler, results):
        backend = GatedBackend(gated_first="ONE")
        session = make_session(dispatcher=TranslationDispatcher(backend), use_context_aware_translation=True)

        feed(session, "ONE", 0)
        scheduler.advance_to(4000)
        assert session.in_flight() == 1

        assert feed(session, "TWO", 4500) == (["TWO"], True)
        scheduler.advance_to(8500)
        assert _wait_until(lambda: session.in_flight() == 1 and ("TWO",) in backend.calls)
        # Generation 2 finished first but must wait for generation 1.
        assert results == []

        backend.release.set()
        assert session.drain(5)
        assert [r.generation for r in results] == [1, 2]
        assert [r.translation for r in results] == ["sentence: ONE", "sentence: TWO"]

    def test_result_discarded_when_cleared_after_flush(self, make_session, feed, scheduler, results):
        backend = GatedBackend(gated_first="ONE")
        session = make_session(dispatcher=TranslationDispatcher(backend), use_context_aware_translation=True)

        feed(session, "ONE", 0)
        scheduler.advance_to(4000)
        session.clear()
        backend.release.set()
        assert session.drain(5)
        assert results == []

        feed(session, "TWO", 5000)
        scheduler.advance_to(9000)
        assert session.drain(5)
        assert [(r.generation, r.original_signs) for r in results] == [(2, ("TWO",))]


def test_invalid_config_fails_at_construction():
    from sign_config import ConfigurationError

    with pytest.raises(ConfigurationError):
        SignTranslationSession(config=PipelineConfig(flush_delay_ms=-1), scheduler=ManualScheduler())
