import threading

import pytest

from scheduling import ManualScheduler
from sign_buffer import SignTranslationSession
from sign_config import PipelineConfig
from translation_service import TranslationDispatcher

# Synthetic MediaPipe-style hand: wrist low in the frame, fingers pointing up.
_BASE_POINTS = {
    0: (0.50, 0.80),  # wrist
    2: (0.45, 0.75),  # thumb mcp
    5: (0.47, 0.65),  # index mcp
    9: (0.50, 0.64),  # middle mcp
    13: (0.53, 0.65),  # ring mcp
    17: (0.56, 0.67),  # pinky mcp
}
_TIPS = {"thumb": 4, "index": 8, "middle": 12, "ring": 16, "pinky": 20}
_EXTENDED = {4: (0.30, 0.62), 8: (0.47, 0.40), 12: (0.50, 0.38), 16: (0.53, 0.40), 20: (0.58, 0.45)}
_FOLDED = {4: (0.48, 0.78), 8: (0.48, 0.72), 12: (0.50, 0.72), 16: (0.52, 0.72), 20: (0.53, 0.74)}


def make_hand(*extended, **overrides):
    """21 [x, y, z] points; `extended` names fingers, overrides move a tip: index=(x, y)."""
    points = [list(_BASE_POINTS[0]) + [0.0] for _ in range(21)]
    for idx, (x, y) in _BASE_POINTS.items():
        points[idx] = [x, y, 0.0]
    for finger, tip in _TIPS.items():
        x, y = (_EXTENDED if finger in extended else _FOLDED)[tip]
        points[tip] = [x, y, 0.0]
    for finger, (x, y) in overrides.items():
        points[_TIPS[finger]] = [x, y, 0.0]
    return points


class FakeBackend:
    """Stands in for ChatCompletionsBackend."""

    is_configured = True

    def __init__(self, reply="Hello, I love you.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def translate_signs(self, signs):
        self.calls.append(tuple(signs))
        if self.error is not None:
            raise self.error
        return self.reply

    def complete(self, prompt):
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class GatedBackend(FakeBackend):
    """Blocks translation of sequences that start with `gated_first` until released."""

    def __init__(self, gated_first):
        super().__init__()
        self.gated_first = gated_first
        self.release = threading.Event()

    def translate_signs(self, signs):
        if signs and signs[0] == self.gated_first:
            assert self.release.wait(5), "gate was never released"
        self.calls.append(tuple(signs))
        return "sentence: " + " ".join(signs)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def results():
    return []


@pytest.fixture
def make_session(scheduler, results):
    sessions = []

    def factory(dispatcher=None, **config):
        session = SignTranslationSession(
            config=PipelineConfig(**config),
            dispatcher=dispatcher or TranslationDispatcher(),
            on_result=results.append,
            scheduler=scheduler,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture
def feed(scheduler):
    """Move the virtual clock to t and submit one confident detection."""

    def _feed(session, label, t, confidence=0.95):
        scheduler.advance_to(t)
        return session.submit(label, confidence, t)

    return _feed
